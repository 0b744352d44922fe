"""Taskbox: container workspaces for automated agent tasks."""
