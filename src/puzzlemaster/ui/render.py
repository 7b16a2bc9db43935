"""Output rendering for the puzzlemaster CLI.

Purpose
- Provide a thin plain-text rendering layer for CLI output.
- Render a project tree (plan, phases, jobs, tasks, teams, agents, actions).

Functional requirements
- Deterministic output; no dependencies beyond the standard library.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence


class CLIRenderer:
    """Thin CLI output renderer producing deterministic plain text."""

    def __init__(self, *, verbose: bool = False) -> None:
        self.verbose = verbose

    def heading(self, text: str) -> None:
        print(text)

    def kv(self, key: str, value: object) -> None:
        print(f"{key}: {value}")

    def text(self, line: str) -> None:
        print(line)

    def section(self, title: str) -> None:
        """Print a section header with a preceding blank line."""

        print(f"\n{title}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            print(f"  {prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a formatted ASCII table."""

        if not rows:
            return

        col_count = len(headers)
        widths = [len(h) for h in headers]
        for row in rows:
            for i in range(min(len(row), col_count)):
                widths[i] = max(widths[i], len(str(row[i])))

        def _pad(cells: Sequence[str]) -> str:
            parts: list[str] = []
            for i in range(col_count):
                cell = str(cells[i]) if i < len(cells) else ""
                parts.append(cell.ljust(widths[i]))
            return "  ".join(parts).rstrip()

        if title:
            self.section(title)
        print(f"  {_pad(list(headers))}")
        print(f"  {'  '.join('-' * w for w in widths)}")
        for row in rows:
            print(f"  {_pad(list(row))}")

    def ok(self, label: str) -> None:
        print(f"  OK  {label}")

    def fail(self, label: str) -> None:
        print(f"  FAIL  {label}")

    def project_tree(self, tree: Mapping[str, object]) -> None:
        """Render the nested mapping built by ``PlanningAPI.project_tree``."""

        project = _as_mapping(tree.get("project"))
        self.heading(f"Project {project.get('name')} [{project.get('id')}]")
        if project.get("description"):
            self.text(f"  {project['description']}")

        plan = tree.get("plan")
        if not isinstance(plan, Mapping):
            self.text("  (no plan)")
            return
        self.text(f"  Plan: {plan.get('description')} [{plan.get('id')}]")

        for phase_node in _as_list(tree.get("phases")):
            phase = _as_mapping(phase_node.get("phase"))
            self.text(f"    Phase {phase.get('name')} [{phase.get('id')}]")

            job = phase_node.get("job")
            if isinstance(job, Mapping):
                self.text(f"      Job {job.get('name')} ({job.get('status')})")
                for task in _as_list(phase_node.get("tasks")):
                    assignee = f" -> {task['agent_id']}" if task.get("agent_id") else ""
                    self.text(f"        - {task.get('name')} ({task.get('status')}){assignee}")

            team = phase_node.get("team")
            if isinstance(team, Mapping):
                self.text(f"      Team {team.get('name')}")
                for agent in _as_list(phase_node.get("agents")):
                    self.text(f"        - {agent.get('name')} [{agent.get('role_id')}]")

            for action in _as_list(phase_node.get("actions")):
                self.text(f"      Action {action.get('name')} => {action.get('target_phase_id')}")


def create_renderer(*, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(verbose=verbose)


def _as_mapping(value: object) -> Mapping[str, object]:
    return value if isinstance(value, Mapping) else {}


def _as_list(value: object) -> list[Mapping[str, object]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, Mapping)]


__all__ = ["CLIRenderer", "create_renderer"]
