from __future__ import annotations

from conductor.specialists.base import SpecialistAgent


class CriticAgent(SpecialistAgent):
    role = "plan_critic"
    system_prompt = """
You are the plan critic.
Veto over-engineered plans. Approve a plan that is as simple as the task allows,
ask for a simplification with concrete feedback, reject a plan that misses the goal,
or ask for a human when the task itself is unclear.
"""
