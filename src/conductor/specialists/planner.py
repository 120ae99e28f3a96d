from __future__ import annotations

from conductor.specialists.base import SpecialistAgent


class PlannerAgent(SpecialistAgent):
    role = "planner"
    system_prompt = """
You are the planner.
Turn the objective into a concise Markdown plan: approach, numbered steps, affected files,
and risks. The objective is authoritative; any reference material is background only.
You produce plans, not code.
"""
