"""Story state machine using transitions library.

A story is pending until every phase has succeeded, then completed.
in_progress only exists while an engine holds the document lock; it is
never written to disk. The persisted form is the story's `passes` flag.

Usage:
    from storyloop.workflow.fsm import StoryFSM

    fsm = StoryFSM(story)
    fsm.start()     # pending -> in_progress
    fsm.complete()  # in_progress -> completed
"""

import logging
from typing import Callable

from transitions import Machine

from storyloop.pm.models import Story

logger = logging.getLogger(__name__)


STATES = [
    "pending",
    "in_progress",
    "completed",
]

TRANSITIONS = [
    {"trigger": "start", "source": "pending", "dest": "in_progress"},
    {"trigger": "complete", "source": "in_progress", "dest": "completed"},
    # A failed phase puts the story back in line for an external retry
    {"trigger": "fail", "source": "in_progress", "dest": "pending"},
]


class StoryFSM:
    """State machine for one story's progression.

    Initial state comes from the story's completion flag.
    """

    def __init__(self, story: Story, on_transition: Callable[[str, str, str], None] | None = None):
        """Initialize FSM for a story.

        Args:
            story: Story to track
            on_transition: Optional callback(from_state, to_state, trigger) called after transitions
        """
        self.story = story
        self.on_transition = on_transition

        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial="completed" if story.is_complete else "pending",
            auto_transitions=False,  # Only explicit transitions
            send_event=True,  # Pass EventData to callbacks
            after_state_change="on_state_change",
        )

    def on_state_change(self, event) -> None:
        """Callback after any state transition."""
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name

        logger.info(f"[FSM] {self.story.id}: {from_state} -> {to_state} ({trigger})")

        if self.on_transition:
            self.on_transition(from_state, to_state, trigger)

    def can(self, trigger: str) -> bool:
        """Check if a trigger can be executed in current state."""
        return trigger in self.machine.get_triggers(self.state)
