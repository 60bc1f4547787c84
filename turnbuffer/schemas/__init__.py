from turnbuffer.schemas.dispatch import GeneratorDecision, SweepResult
from turnbuffer.schemas.inbound import InboundMessageEvent, IngestResponse

__all__ = ["InboundMessageEvent", "IngestResponse", "GeneratorDecision", "SweepResult"]
