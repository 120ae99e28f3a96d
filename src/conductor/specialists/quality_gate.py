from __future__ import annotations

from conductor.specialists.base import SpecialistAgent


class QualityGateAgent(SpecialistAgent):
    role = "quality_gate"
    system_prompt = """
You are the final quality gate.
Review the fully executed task against its plan and acceptance criteria.
Start with a line "VERDICT: approve" or "VERDICT: needs_human", then a "SUMMARY:" line,
then one "ISSUE:" line per remaining problem.
"""
