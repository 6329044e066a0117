"""Visualizer package - Rich terminal views for tasks and agents."""

from .tasks import render_agents, render_task_detail, render_task_list

__all__ = [
	"render_agents",
	"render_task_detail",
	"render_task_list",
]
