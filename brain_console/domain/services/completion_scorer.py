"""
Completion scoring for an enhancement analysis against the local edit state.

Two categories are scored:
- quick_wins: missing-field descriptors across all cards, de-duplicated by fieldId.
- refinement_questions: refinement questions, keyed by question id.

Each category scores round(100 * filled / total), or 100 when nothing is
outstanding. The overall score is the unweighted mean of the category
percentages. Rounding is half-up so 12.5 -> 13 matches the backend's figures.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, List

from brain_console.domain.edit_state import EditState
from brain_console.domain.schemas.analysis import EnhancementAnalysis


QUICK_WINS = "quick_wins"
REFINEMENT_QUESTIONS = "refinement_questions"


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class CategoryScore:
    filled: int
    total: int
    missing: List[str] = field(default_factory=list)

    @property
    def percentage(self) -> int:
        if self.total == 0:
            return 100
        return round_half_up(100 * self.filled / self.total)


@dataclass(frozen=True)
class CompletionScore:
    per_category: Dict[str, CategoryScore]
    overall: int

    def percentage(self, category: str) -> int:
        return self.per_category[category].percentage


def _score_quick_wins(analysis: EnhancementAnalysis, edit_state: EditState) -> CategoryScore:
    descriptors = analysis.quick_win_fields()
    missing = [d.fieldId for d in descriptors if not edit_state.is_filled(d.fieldId, d.kind)]
    return CategoryScore(filled=len(descriptors) - len(missing), total=len(descriptors), missing=missing)


def _score_questions(analysis: EnhancementAnalysis, edit_state: EditState) -> CategoryScore:
    questions = analysis.refinement_questions()
    missing = [q.id for q in questions if not edit_state.is_filled(q.id, q.kind)]
    return CategoryScore(filled=len(questions) - len(missing), total=len(questions), missing=missing)


def score_completion(analysis: EnhancementAnalysis, edit_state: EditState) -> CompletionScore:
    per_category = {
        QUICK_WINS: _score_quick_wins(analysis, edit_state),
        REFINEMENT_QUESTIONS: _score_questions(analysis, edit_state),
    }
    percentages = [score.percentage for score in per_category.values()]
    overall = round_half_up(sum(percentages) / len(percentages))
    return CompletionScore(per_category=per_category, overall=overall)
