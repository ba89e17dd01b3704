"""Stage run state machine using the ``transitions`` library.

Defines 9 states and the triggers the driver fires as a stage run
progresses from gate check to a terminal outcome.
"""

from __future__ import annotations

import logging
from typing import Any

from transitions.extensions.asyncio import AsyncMachine

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# States
# ---------------------------------------------------------------------------
STATES: list[str] = [
    "idle",
    "gate_check",
    "budget_check",
    "executing",
    "consolidating",
    "manifest_written",
    "success",
    "blocked",
    "failed",
]

TERMINAL_STATES = {"success", "blocked", "failed"}

# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------
TRANSITIONS: list[dict[str, Any]] = [
    {"trigger": "start", "source": "idle", "dest": "gate_check"},
    {
        "trigger": "gate_passed",
        "source": "gate_check",
        "dest": "budget_check",
        "conditions": ["gates_allowed"],
    },
    {
        "trigger": "budget_passed",
        "source": "budget_check",
        "dest": "executing",
        "conditions": ["within_budget"],
    },
    {"trigger": "deny", "source": ["gate_check", "budget_check"], "dest": "blocked"},
    {
        "trigger": "execution_done",
        "source": "executing",
        "dest": "consolidating",
        "conditions": ["is_group"],
    },
    {
        "trigger": "record_manifest",
        "source": ["executing", "consolidating"],
        "dest": "manifest_written",
    },
    {"trigger": "finish_success", "source": "manifest_written", "dest": "success"},
    {"trigger": "finish_blocked", "source": "manifest_written", "dest": "blocked"},
    {"trigger": "finish_failed", "source": "manifest_written", "dest": "failed"},
    {
        "trigger": "fail",
        "source": ["gate_check", "budget_check", "executing", "consolidating"],
        "dest": "failed",
    },
]

FINISH_TRIGGERS: dict[str, str] = {
    "success": "finish_success",
    "blocked": "finish_blocked",
    "failed": "finish_failed",
}


def create_stage_machine(model: Any, initial_state: str = "idle") -> AsyncMachine:
    """Create and return an ``AsyncMachine`` bound to *model*.

    The model must implement the guards referenced in ``TRANSITIONS``
    (``gates_allowed``, ``within_budget``, ``is_group``).  With
    ``send_event=True`` each guard receives the transition's
    ``EventData``.

    Args:
        model: The object whose state the machine manages.
        initial_state: The initial state for the machine.

    Returns:
        Configured ``AsyncMachine`` instance.
    """
    return AsyncMachine(
        model=model,
        states=STATES,
        transitions=TRANSITIONS,
        initial=initial_state,
        auto_transitions=False,
        send_event=True,
        queued=True,
        ignore_invalid_triggers=True,
    )
