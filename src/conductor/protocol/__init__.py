from conductor.protocol.interpreter import (
    Interpreter,
    ResponseInterpreter,
    StrictSchemaInterpreter,
    build_interpreter,
)
from conductor.protocol.verdicts import (
    AgentRole,
    ChunkInterpretation,
    ChunkVerdict,
    CritiqueInterpretation,
    CritiqueVerdict,
    ImplementationInterpretation,
    ImplementationVerdict,
    Interpretation,
    QualityGateInterpretation,
    QualityGateVerdict,
    RefinementInterpretation,
    RefinementVerdict,
    ReviewInterpretation,
    ReviewVerdict,
)

__all__ = [
    "AgentRole",
    "ChunkInterpretation",
    "ChunkVerdict",
    "CritiqueInterpretation",
    "CritiqueVerdict",
    "ImplementationInterpretation",
    "ImplementationVerdict",
    "Interpretation",
    "Interpreter",
    "QualityGateInterpretation",
    "QualityGateVerdict",
    "RefinementInterpretation",
    "RefinementVerdict",
    "ResponseInterpreter",
    "ReviewInterpretation",
    "ReviewVerdict",
    "StrictSchemaInterpreter",
    "build_interpreter",
]
