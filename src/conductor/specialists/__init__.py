from conductor.specialists.base import SpecialistAgent, SpecialistResponse
from conductor.specialists.chunker import ChunkerAgent
from conductor.specialists.classifier import ClassifierAgent
from conductor.specialists.coder import CoderAgent
from conductor.specialists.commit_writer import CommitWriterAgent
from conductor.specialists.critic import CriticAgent
from conductor.specialists.documenter import DocumenterAgent
from conductor.specialists.invoker import AgentInvoker, AgentReply
from conductor.specialists.planner import PlannerAgent
from conductor.specialists.quality_gate import QualityGateAgent
from conductor.specialists.refiner import RefinerAgent
from conductor.specialists.reviewer import ReviewerAgent

__all__ = [
    "AgentInvoker",
    "AgentReply",
    "ChunkerAgent",
    "ClassifierAgent",
    "CoderAgent",
    "CommitWriterAgent",
    "CriticAgent",
    "DocumenterAgent",
    "PlannerAgent",
    "QualityGateAgent",
    "RefinerAgent",
    "ReviewerAgent",
    "SpecialistAgent",
    "SpecialistResponse",
]
