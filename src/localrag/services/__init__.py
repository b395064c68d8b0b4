"""Service layer: query classification, answer synthesis and the pipeline controller."""

from .answerer import Synthesis, build_generation_prompt, format_answer, synthesize_answer
from .classifier import classify_query, conversational_response, out_of_scope_response, should_generate
from .pipeline import AskOptions, IngestResult, KnowledgeClient, PipelineState, PipelineStatus

__all__ = [
    "AskOptions",
    "IngestResult",
    "KnowledgeClient",
    "PipelineState",
    "PipelineStatus",
    "Synthesis",
    "build_generation_prompt",
    "classify_query",
    "conversational_response",
    "format_answer",
    "out_of_scope_response",
    "should_generate",
    "synthesize_answer",
]
