#!/usr/bin/env python3
"""
Assessment weighting extractor for Guelph course descriptions
Recovers (component, percentage) pairs like "Midterm: 30%" from free text
"""

import math
import re
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Tuple

# "Assignments: 30%", "Final exam - 40%", "Labs – 20 %"
WEIGHT_PATTERN = re.compile(r'(\w[\w\s]*?)\s*[:\-–]\s*(\d{1,3})\s*%', re.IGNORECASE)

EVALUATION_SECTION = re.compile(r'evaluation[:\s]+(.*?)(?:\n\n|$)', re.IGNORECASE | re.DOTALL)
WEIGHTING_SECTION = re.compile(
    r'(?:assessment|mark|grade)\s*(?:weighting|distribution)[:\s]+(.*?)(?:\n\n|$)',
    re.IGNORECASE | re.DOTALL
)

# Scanned in order, first key found inside the lowercased label wins.
# "lab" is checked before "midterm" and "final" before "exam", so order matters.
COMPONENT_SYNONYMS: Tuple[Tuple[str, str], ...] = (
    ('assignment', 'Assignments'),
    ('assignments', 'Assignments'),
    ('assign', 'Assignments'),
    ('lab', 'Labs'),
    ('labs', 'Labs'),
    ('laboratory', 'Labs'),
    ('midterm', 'Midterm'),
    ('midterm exam', 'Midterm'),
    ('mid term', 'Midterm'),
    ('final', 'Final Exam'),
    ('final exam', 'Final Exam'),
    ('final examination', 'Final Exam'),
    ('exam', 'Final Exam'),
    ('examination', 'Final Exam'),
    ('quiz', 'Quizzes'),
    ('quizzes', 'Quizzes'),
    ('project', 'Project'),
    ('projects', 'Project'),
    ('presentation', 'Presentation'),
    ('presentations', 'Presentation'),
    ('participation', 'Participation'),
    ('attendance', 'Attendance'),
    ('homework', 'Homework'),
    ('home work', 'Homework'),
)

DEFAULT_WEIGHTINGS: Tuple[Tuple[str, int], ...] = (
    ('Assignments', 30),
    ('Midterm', 30),
    ('Final Exam', 40),
)


@dataclass
class AssessmentComponent:
    """One graded element of a course and its share of the final grade"""
    name: str
    weight: int

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def normalize_component_name(label: str) -> str:
    """Map a raw label onto its canonical component name"""
    label = label.strip()
    lower = label.lower()

    for key, canonical in COMPONENT_SYNONYMS:
        if key in lower:
            return canonical

    return ' '.join(word.capitalize() for word in label.split())


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _section_matches(pattern: re.Pattern, text: str) -> List[Tuple[str, int]]:
    """Label/weight pairs found inside the section introduced by ``pattern``"""
    section = pattern.search(text)
    if not section:
        return []

    matches = []
    for label, raw_weight in WEIGHT_PATTERN.findall(section.group(1)):
        weight = int(raw_weight)
        if not 0 < weight <= 100:
            continue
        matches.append((normalize_component_name(label), weight))
    return matches


def extract_weightings(description: Optional[str]) -> List[AssessmentComponent]:
    """
    Infer the assessment weighting scheme of a course from its description.

    Three passes run over the text. The global scan keeps the largest weight
    seen per component; the "Evaluation" and "Assessment Weighting" /
    "Mark Distribution" sections are trusted more and overwrite it. Totals
    above 100 are scaled down proportionally. When nothing is found a
    default 30/30/40 split is returned.
    """
    text = description or ''
    found: Dict[str, int] = {}

    # Pass 1: anywhere in the text
    for label, raw_weight in WEIGHT_PATTERN.findall(text):
        label = label.strip()
        weight = int(raw_weight)
        if 2 < len(label) < 50 and 0 < weight <= 100:
            name = normalize_component_name(label)
            if name not in found or found[name] < weight:
                found[name] = weight

    # Passes 2 and 3: section scoped, unconditional overwrite
    for section_pattern in (EVALUATION_SECTION, WEIGHTING_SECTION):
        for name, weight in _section_matches(section_pattern, text):
            found[name] = weight

    components = [AssessmentComponent(name=name, weight=weight) for name, weight in found.items()]

    if not components:
        return [AssessmentComponent(name=name, weight=weight) for name, weight in DEFAULT_WEIGHTINGS]

    total = sum(c.weight for c in components)
    if total > 100:
        for component in components:
            component.weight = _round_half_up(component.weight / total * 100)

    return components
