import itertools
import shutil

from tmux_fleet.reconcile import reconcile
from tmux_fleet.state import FleetState
from tmux_fleet.worktree import live_paths


def _state(*workspaces) -> FleetState:
    state = FleetState()
    for workspace in workspaces:
        state.add(workspace)
    return state


def test_drops_only_missing_worktree(make_workspace) -> None:
    feat1 = make_workspace("repoA", "feat1")
    feat2 = make_workspace("repoA", "feat2")
    shutil.rmtree(feat2.path)
    state = _state(feat1, feat2)

    result = reconcile(state, live_paths(state.worktrees.values()))

    assert list(result.state.worktrees) == ["repoA/feat1"]
    assert [ws.identity.key for ws in result.removed] == ["repoA/feat2"]
    assert result.changed
    assert sorted(state.worktrees) == ["repoA/feat1", "repoA/feat2"]


def test_result_is_subset_of_live_paths(make_workspace) -> None:
    workspaces = [make_workspace("repoA", f"ws{idx}", create=False) for idx in range(4)]
    workspaces.append(make_workspace("repoB", "ws0", create=False))
    state = _state(*workspaces)
    all_paths = [ws.path for ws in workspaces]

    for size in range(len(all_paths) + 1):
        for live in itertools.combinations(all_paths, size):
            result = reconcile(state, live)
            kept = {ws.path for ws in result.state.worktrees.values()}
            removed = {ws.path for ws in result.removed}
            assert kept <= set(live)
            assert removed == set(all_paths) - set(live)
            assert len(result.state.worktrees) + len(result.removed) == len(workspaces)


def test_unchanged_when_everything_is_live(make_workspace) -> None:
    state = _state(make_workspace("repoA", "feat1"), make_workspace("repoB", "feat1"))

    result = reconcile(state, live_paths(state.worktrees.values()))

    assert not result.changed
    assert result.state.worktrees == state.worktrees


def test_accepts_string_paths(make_workspace) -> None:
    feat1 = make_workspace("repoA", "feat1")
    state = _state(feat1)

    result = reconcile(state, [str(feat1.path) + "/"])

    assert not result.changed


def test_empty_store() -> None:
    result = reconcile(FleetState(), [])
    assert result.removed == []
    assert result.state.worktrees == {}
