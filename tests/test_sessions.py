import threading
from pathlib import Path

import pytest

from tmux_fleet.config import AgentBinding
from tmux_fleet.config import KeyBindings
from tmux_fleet.errors import ConfigError
from tmux_fleet.errors import FleetError
from tmux_fleet.errors import SessionCreateFailed
from tmux_fleet.sessions import SAFE_CHARS
from tmux_fleet.sessions import SessionManager
from tmux_fleet.sessions import decode_component
from tmux_fleet.sessions import encode_component
from tmux_fleet.state import WorkspaceId
from tmux_fleet.tmux import FakeTmuxAdapter


def test_ensure_session_is_idempotent(sessions: SessionManager, adapter: FakeTmuxAdapter, make_workspace) -> None:
    workspace = make_workspace("repoA", "feat1")

    first = sessions.ensure_session(workspace)
    second = sessions.ensure_session(workspace)

    assert first.name == second.name
    assert first.created is True
    assert second.created is False
    assert len(adapter.created) == 1
    name, command, start_directory = adapter.created[0]
    assert name == "fleet-repoA__feat1"
    assert command == ("echo", "agent")
    assert start_directory == str(workspace.path)


def test_concurrent_ensure_creates_once(adapter: FakeTmuxAdapter, tmp_path: Path, make_workspace) -> None:
    adapter.create_delay = 0.2
    workspace = make_workspace("repoA", "feat1")
    managers = [
        SessionManager(adapter, AgentBinding(agent="echo agent"), lock_dir=tmp_path / "locks") for _ in range(2)
    ]
    barrier = threading.Barrier(2)
    handles = []
    errors = []

    def worker(manager: SessionManager) -> None:
        barrier.wait()
        try:
            handles.append(manager.ensure_session(workspace))
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(manager,)) for manager in managers]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert len(adapter.created) == 1
    assert len(handles) == 2
    assert handles[0].name == handles[1].name
    assert sorted(handle.created for handle in handles) == [False, True]


def test_create_failure_is_reported(sessions: SessionManager, adapter: FakeTmuxAdapter, make_workspace) -> None:
    adapter.fail_create = "server exited unexpectedly"
    workspace = make_workspace("repoA", "feat1")

    with pytest.raises(SessionCreateFailed) as excinfo:
        sessions.ensure_session(workspace)

    assert "server exited unexpectedly" in str(excinfo.value)
    assert excinfo.value.session_name == "fleet-repoA__feat1"
    assert adapter.list_sessions() == []


def test_unparseable_agent_command_fails_creation(adapter: FakeTmuxAdapter, tmp_path: Path, make_workspace) -> None:
    manager = SessionManager(adapter, AgentBinding(agent="'unterminated"), lock_dir=tmp_path / "locks")

    with pytest.raises(SessionCreateFailed):
        manager.ensure_session(make_workspace("repoA", "feat1"))
    assert adapter.created == []


IDENTITY_PAIRS = [
    ("a_b", "c"),
    ("a", "b_c"),
    ("a__b", "c"),
    ("a", "_b"),
    ("a/b", "c"),
    ("a", "b/c"),
    ("a-b", "c"),
    ("a", "-bc"),
    ("a.b", "c"),
    ("a:b", "c"),
    ("", "ab"),
    ("ab", ""),
    ("a b", "c"),
    ("a", "b c"),
]


def test_session_names_are_injective_and_reversible(sessions: SessionManager) -> None:
    pairs = list(IDENTITY_PAIRS)
    for code in range(128):
        pairs.append((chr(code), "x"))
        pairs.append(("x", chr(code)))
        pairs.append((f"r{chr(code)}", f"{chr(code)}w"))

    names = {}
    for repo, name in pairs:
        identity = WorkspaceId(repo, name)
        session_name = sessions.session_name(identity)
        assert session_name == sessions.session_name(identity)
        assert set(session_name[len("fleet-") :]) <= SAFE_CHARS | {"_"}
        assert sessions.identity_for(session_name) == identity
        names.setdefault(session_name, set()).add(identity)

    assert all(len(identities) == 1 for identities in names.values())


def test_component_codec() -> None:
    assert encode_component("feat/login") == "feat_2flogin"
    assert decode_component("feat_2flogin") == "feat/login"
    assert decode_component(encode_component("naïve")) == "naïve"
    with pytest.raises(ValueError):
        decode_component("bad_zz")
    with pytest.raises(ValueError):
        decode_component("has.dot")


def test_identity_for_rejects_foreign_names(sessions: SessionManager) -> None:
    assert sessions.identity_for("scratch") is None
    assert sessions.identity_for("fleet-nosplit") is None
    assert sessions.identity_for("fleet-repo__bad_q1") is None


def test_list_live_keeps_only_canonical_fleet_sessions(make_workspace, tmp_path: Path) -> None:
    adapter = FakeTmuxAdapter(sessions={"scratch": "", "fleet-legacy": "", "fleet-repoA__feat_2d": ""})
    manager = SessionManager(adapter, AgentBinding(agent="echo agent"), lock_dir=tmp_path / "locks")
    handle = manager.ensure_session(make_workspace("repoA", "feat1"))

    # "_2d" decodes to "-", which is itself safe, so that name is not canonical
    assert manager.list_live() == {handle.identity: handle.name}


def test_destroy_reports_whether_session_existed(sessions: SessionManager, adapter: FakeTmuxAdapter, make_workspace) -> None:
    handle = sessions.ensure_session(make_workspace("repoA", "feat1"))

    assert sessions.destroy(handle) is True
    assert not sessions.is_live(handle)
    assert sessions.destroy(handle) is False


def test_attach_hands_over_named_session(sessions: SessionManager, adapter: FakeTmuxAdapter, make_workspace) -> None:
    handle = sessions.ensure_session(make_workspace("repoA", "feat1"))

    result = sessions.attach(handle)

    assert result.ok
    assert adapter.attached == [handle.name]


def test_toggle_secondary_pane(sessions: SessionManager, adapter: FakeTmuxAdapter, make_workspace) -> None:
    handle = sessions.ensure_session(make_workspace("repoA", "feat1"))

    assert sessions.toggle_secondary_pane(handle) is True
    assert len(adapter.list_panes(handle.name)) == 2
    assert sessions.toggle_secondary_pane(handle) is False
    assert len(adapter.list_panes(handle.name)) == 1


def test_toggle_requires_running_session(sessions: SessionManager, make_workspace) -> None:
    handle = sessions.handle_for(make_workspace("repoA", "feat1"))
    with pytest.raises(FleetError):
        sessions.toggle_secondary_pane(handle)


def test_launch_editor_opens_pane_with_workspace_path(
    sessions: SessionManager, adapter: FakeTmuxAdapter, make_workspace
) -> None:
    workspace = make_workspace("repoA", "feat1")
    handle = sessions.ensure_session(workspace)

    with pytest.raises(ConfigError):
        sessions.launch_editor(handle, None)

    sessions.launch_editor(handle, "code --wait")
    editor_pane = adapter.list_panes(handle.name)[1]
    assert adapter.pane_text(editor_pane.pane_id) == f"code --wait {workspace.path}"


def test_install_key_bindings(sessions: SessionManager, adapter: FakeTmuxAdapter) -> None:
    sessions.install_key_bindings(KeyBindings(toggle_pane="T", editor="E"), ["tmux-fleet"])

    assert adapter.bindings == {
        "T": ("tmux-fleet", "pane", "toggle", "#{session_name}"),
        "E": ("tmux-fleet", "pane", "editor", "#{session_name}"),
    }


def test_destroy_removes_lock_file(sessions: SessionManager, make_workspace, tmp_path: Path) -> None:
    handle = sessions.ensure_session(make_workspace("repoA", "feat1"))
    assert (tmp_path / "locks" / f"{handle.name}.lock").exists()

    sessions.destroy(handle)

    assert list((tmp_path / "locks").iterdir()) == []


@pytest.mark.parametrize(
    ("choice", "command"),
    [
        ("codex", ("codex",)),
        ("Claude", ("claude", "--dangerously-skip-permissions")),
        ("skip", ()),
    ],
)
def test_agent_choice_overrides_binding(
    choice: str, command: tuple, sessions: SessionManager, adapter: FakeTmuxAdapter, make_workspace
) -> None:
    handle = sessions.ensure_session(make_workspace("repoA", "feat1"), agent_choice=choice)

    assert handle.created
    assert adapter.created[0][1] == command
    assert sessions.binding.agent == "echo agent"


def test_agent_choice_is_ignored_for_running_session(
    sessions: SessionManager, adapter: FakeTmuxAdapter, make_workspace
) -> None:
    workspace = make_workspace("repoA", "feat1")
    sessions.ensure_session(workspace)

    again = sessions.ensure_session(workspace, agent_choice="skip")

    assert not again.created
    assert len(adapter.created) == 1


def test_unknown_agent_choice_is_rejected(sessions: SessionManager, adapter: FakeTmuxAdapter, make_workspace) -> None:
    with pytest.raises(ConfigError, match="Unknown agent choice"):
        sessions.ensure_session(make_workspace("repoA", "feat1"), agent_choice="vim")
    assert adapter.created == []
