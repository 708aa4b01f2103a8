from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

from replay.types import ACTIONS, Action, Evaluation, InvalidDecision


def evaluate(decision: Action, correct_action: Action) -> Evaluation:
    """Compare a learner decision with the scenario's correct action. No prose, no side effects."""
    if decision not in ACTIONS:
        raise InvalidDecision(f"unknown decision {decision!r}; expected one of {ACTIONS}", decision=decision)
    if correct_action not in ACTIONS:
        raise InvalidDecision(f"unknown correct action {correct_action!r}", correct_action=correct_action)
    return Evaluation(is_correct=decision == correct_action, correct_action=correct_action, decision=decision)


@dataclass
class PracticeScorecard:
    """Running tally of decisions across scenarios in one practice sitting."""

    attempted: int = 0
    correct: int = 0
    current_streak: int = 0
    best_streak: int = 0
    history: List[Evaluation] = field(default_factory=list, repr=False)

    def record(self, ev: Evaluation) -> None:
        self.history.append(ev)
        self.attempted += 1
        if ev.is_correct:
            self.correct += 1
            self.current_streak += 1
            self.best_streak = max(self.best_streak, self.current_streak)
        else:
            self.current_streak = 0

    @property
    def accuracy(self) -> float:
        return (self.correct / self.attempted * 100.0) if self.attempted else 0.0
