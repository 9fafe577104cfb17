# zbory/voting/tally.py
"""Per-question decision rules for protocol votes.

One owner carries one vote (ownership shares are not weighted). Abstention is
not modeled: an owner who did not vote is absent from the denominator.

- simple majority: passes iff for * 2 > total (a tie fails)
- two-thirds: passes iff for * 3 >= total * 2

Integer cross-multiplication only, so the threshold boundary is exact.
A question nobody voted on fails.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from zbory.enums import VoteChoice


@dataclass(frozen=True)
class CastVote:
    owner_id: str
    question_id: str
    choice: VoteChoice
    cast_at: Optional[datetime] = None


@dataclass(frozen=True)
class QuestionResult:
    question_id: str
    order_number: int
    requires_two_thirds: bool
    for_count: int
    against_count: int

    @property
    def total_count(self) -> int:
        return self.for_count + self.against_count

    @property
    def passed(self) -> bool:
        return decision_passes(self.for_count, self.total_count, self.requires_two_thirds)

    def to_dict(self) -> Dict:
        return {
            'questionId': self.question_id,
            'orderNumber': self.order_number,
            'requiresTwoThirds': self.requires_two_thirds,
            'forCount': self.for_count,
            'againstCount': self.against_count,
            'totalCount': self.total_count,
            'passed': self.passed,
        }


@dataclass(frozen=True)
class ProtocolTally:
    results: Tuple[QuestionResult, ...]

    def for_question(self, question_id: str) -> Optional[QuestionResult]:
        for result in self.results:
            if result.question_id == question_id:
                return result
        return None

    def to_dict(self) -> Dict:
        return {'questions': [result.to_dict() for result in self.results]}


def decision_passes(for_count: int, total_count: int, requires_two_thirds: bool) -> bool:
    if total_count <= 0:
        return False
    if requires_two_thirds:
        return for_count * 3 >= total_count * 2
    return for_count * 2 > total_count


def latest_votes(votes: Iterable[CastVote]) -> Dict[Tuple[str, str], CastVote]:
    """Keep the last submission per (owner, question)."""
    latest: Dict[Tuple[str, str], CastVote] = {}
    for vote in votes:
        key = (vote.owner_id, vote.question_id)
        current = latest.get(key)
        if current is None or _is_newer(vote, current):
            latest[key] = vote
    return latest


def _is_newer(candidate: CastVote, current: CastVote) -> bool:
    if candidate.cast_at is None or current.cast_at is None:
        # without timestamps, iteration order is submission order
        return True
    return candidate.cast_at >= current.cast_at


def tally_question(question, votes: Iterable[CastVote]) -> QuestionResult:
    for_count = 0
    against_count = 0
    for vote in latest_votes(v for v in votes if v.question_id == question.id).values():
        if vote.choice == VoteChoice.FOR:
            for_count += 1
        else:
            against_count += 1
    return QuestionResult(
        question_id=question.id,
        order_number=question.order_number,
        requires_two_thirds=bool(question.requires_two_thirds),
        for_count=for_count,
        against_count=against_count,
    )


def tally_protocol(questions, votes: Iterable[CastVote]) -> ProtocolTally:
    collected: List[CastVote] = list(votes)
    ordered = sorted(questions, key=lambda q: q.order_number)
    return ProtocolTally(results=tuple(tally_question(q, collected) for q in ordered))
