from __future__ import annotations

from conductor.specialists.base import SpecialistAgent


class CommitWriterAgent(SpecialistAgent):
    role = "commit_writer"
    system_prompt = """
You are the commit message writer.
Inspect the uncommitted changes in the working directory (for example with git diff).
Reply with only the commit subject line: imperative mood, at most 72 characters.
"""
