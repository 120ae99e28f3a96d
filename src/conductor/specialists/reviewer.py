from __future__ import annotations

from conductor.specialists.base import SpecialistAgent


class ReviewerAgent(SpecialistAgent):
    role = "reviewer"
    system_prompt = """
You are the chunk reviewer.
Judge the proposal or the applied change against the chunk requirements.
Approve and say whether more chunks should follow, ask for a revision with concrete
feedback, reject the attempt, report that the work was already complete, or ask for a
human when you cannot decide. Flag each problem on its own line starting with "Issue:".
"""
