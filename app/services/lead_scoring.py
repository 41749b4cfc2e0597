"""Lead scoring.

Points:
    budget lower bound  >=5000: 25, >=2000: 15, >=1000: 5
    decision maker      20
    responds in 5 min   15
    timeline            immediate: 10, 2weeks: 5

Grade A >= 75, B >= 55, C >= 35, else D. Package follows the grade:
A -> scale, B -> growth, anything else -> starter.
"""

import re
from dataclasses import dataclass
from typing import Optional

from app.models import LeadGradeEnum

_FIRST_INTEGER = re.compile(r"\d+")

PACKAGE_BY_GRADE = {
    LeadGradeEnum.A: "scale",
    LeadGradeEnum.B: "growth",
}
DEFAULT_PACKAGE = "starter"


@dataclass(frozen=True)
class LeadScore:
    score: int
    grade: LeadGradeEnum
    recommended_package: str


def parse_budget_lower_bound(budget_range: Optional[str]) -> int:
    """First integer in a range label such as "2,000-5,000" (-> 2000)."""
    match = _FIRST_INTEGER.search((budget_range or "").replace(",", ""))
    return int(match.group()) if match else 0


def grade_for(score: int) -> LeadGradeEnum:
    if score >= 75:
        return LeadGradeEnum.A
    if score >= 55:
        return LeadGradeEnum.B
    if score >= 35:
        return LeadGradeEnum.C
    return LeadGradeEnum.D


def calculate_lead_score(
    monthly_budget_range: Optional[str],
    decision_maker: Optional[bool],
    response_within_5_min: Optional[bool],
    timeline: Optional[str],
) -> LeadScore:
    score = 0

    budget = parse_budget_lower_bound(monthly_budget_range)
    if budget >= 5000:
        score += 25
    elif budget >= 2000:
        score += 15
    elif budget >= 1000:
        score += 5

    if decision_maker:
        score += 20
    if response_within_5_min:
        score += 15

    if timeline == "immediate":
        score += 10
    elif timeline == "2weeks":
        score += 5

    grade = grade_for(score)
    return LeadScore(
        score=score,
        grade=grade,
        recommended_package=PACKAGE_BY_GRADE.get(grade, DEFAULT_PACKAGE),
    )
