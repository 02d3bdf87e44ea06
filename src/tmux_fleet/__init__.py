"""Run one coding agent per git worktree in tmux and watch them from a dashboard."""

__version__ = "0.1.0"
