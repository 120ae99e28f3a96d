from __future__ import annotations

from conductor.specialists.base import SpecialistAgent


class ClassifierAgent(SpecialistAgent):
    role = "classifier"
    system_prompt = """
You classify another agent's response.
Reply with exactly one keyword from the list you are given and nothing else.
"""
