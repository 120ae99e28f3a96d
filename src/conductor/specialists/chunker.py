from __future__ import annotations

from conductor.specialists.base import SpecialistAgent


class ChunkerAgent(SpecialistAgent):
    role = "chunker"
    system_prompt = """
You are the work chunker.
Given the approved plan and the chunks already completed, hand out the next small,
reviewable unit of work with a description, a bulleted requirement list, and context.
When every part of the plan is done, answer TASK_COMPLETE instead of a chunk.
You never write code yourself.
"""
