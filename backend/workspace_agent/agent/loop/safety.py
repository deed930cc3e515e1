"""Per-turn safety guards for the engine loop.

Provides:
1. Step cap: hard limit on LLM round-trips per turn (``max_steps``)
2. Repetition detection: flags the 3rd identical (tool_name, arguments) call within a 10-call window
3. Tool output truncation: middle-truncates outputs above a word budget before they reach the LLM
"""

import collections
import json
from typing import Any

REPEAT_WINDOW = 10
REPEAT_THRESHOLD = 3
DEFAULT_WORD_BUDGET = 1000

REPETITION_HINT = (
    "\n\nNote: this exact call has now been made {count} times recently with the same arguments. "
    "Change your approach instead of repeating it."
)


class StepGuard:
    """Usage::

        guard = StepGuard(max_steps=25)
        while guard.next_step():
            ...                                 # one LLM call + its tool calls
            count = guard.record_call(name, args)
            output = guard.truncate(output) + guard.repetition_hint(count)
    """

    def __init__(self, max_steps: int = 25, word_budget: int = DEFAULT_WORD_BUDGET) -> None:
        self.max_steps = max_steps
        self.word_budget = word_budget
        self.step = 0
        self._window: collections.deque[str] = collections.deque(maxlen=REPEAT_WINDOW)

    def next_step(self) -> bool:
        """Advance the step counter; False once the cap is reached."""
        if self.step >= self.max_steps:
            return False
        self.step += 1
        return True

    @property
    def exhausted(self) -> bool:
        return self.step >= self.max_steps

    @staticmethod
    def _fingerprint(tool_name: str, arguments: Any) -> str:
        return f"{tool_name}:{json.dumps(arguments, sort_keys=True, default=str)}"

    def record_call(self, tool_name: str, arguments: Any) -> int:
        """Record a call; returns how often it appears in the current window."""
        fingerprint = self._fingerprint(tool_name, arguments)
        self._window.append(fingerprint)
        return sum(1 for fp in self._window if fp == fingerprint)

    def repetition_hint(self, count: int) -> str:
        if count < REPEAT_THRESHOLD:
            return ""
        return REPETITION_HINT.format(count=count)

    def truncate(self, text: str) -> str:
        """Middle-truncate *text* above the word budget, keeping head and tail halves."""
        words = text.split()
        if len(words) <= self.word_budget:
            return text
        half = self.word_budget // 2
        omitted = len(words) - 2 * half
        head = " ".join(words[:half])
        tail = " ".join(words[-half:])
        return f"{head}\n[{omitted} words omitted]\n{tail}"
