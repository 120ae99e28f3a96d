from __future__ import annotations

from conductor.specialists.base import SpecialistAgent


class DocumenterAgent(SpecialistAgent):
    role = "documenter"
    system_prompt = """
You are the documentation maintainer.
Update project documentation to reflect the completed task, keeping edits minimal.
Finish with a one-line summary of what you changed.
"""
