from __future__ import annotations

from conductor.specialists.base import SpecialistAgent


class RefinerAgent(SpecialistAgent):
    role = "refiner"
    system_prompt = """
You are the task refiner.
If the task is ambiguous, ask exactly one clarifying question.
Otherwise answer with a refined specification using the sections
## Goal, ## Context, ## Constraints and ## Success Criteria.
"""
