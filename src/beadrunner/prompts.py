from __future__ import annotations

from dataclasses import dataclass

NON_INTERACTIVE_NOTICE = (
    "IMPORTANT: You are running non-interactively. Do NOT use EnterPlanMode or "
    "ExitPlanMode -- there is no human to approve plans. Do NOT use AskUserQuestion "
    "-- there is no human to answer. Just execute the work directly."
)

WORKFLOW_NOTICE = (
    "Follow the instructions in the task description above exactly. The description "
    "contains the full workflow for this task type."
)

DEBRIEF_NOTICE = (
    "Include: what you did, any difficulties or unexpected behavior, how long things "
    "took if notable, anything you were not sure about, and any follow-up suggestions. "
    "Be honest -- this is for the human reviewing your work later."
)


@dataclass(slots=True, frozen=True)
class TaskPrompt:
    """Worker instructions for a single tracker task."""

    task_id: str
    title: str
    description: str
    extra_instructions: str = ""
    tracker_binary: str = "bd"

    def sections(self) -> list[str]:
        sections = [
            f'You are working on beads issue {self.task_id}: "{self.title}"',
            f"Task description:\n{self.description}",
            NON_INTERACTIVE_NOTICE,
            WORKFLOW_NOTICE,
            "Before closing the issue, add a brief debrief note summarizing how it went:\n"
            f'  {self.tracker_binary} update {self.task_id} --append-notes="<your debrief>"\n'
            f"{DEBRIEF_NOTICE}",
            "When you have completed all steps, close the issue: "
            f"{self.tracker_binary} close {self.task_id}",
        ]
        extra = self.extra_instructions.strip()
        if extra:
            sections.append(extra)
        return sections

    def render(self) -> str:
        return "\n\n".join(self.sections())
