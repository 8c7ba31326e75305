"""Prompt templates for grounded answer generation."""
from __future__ import annotations

import json
from typing import Any, Dict, List

from .types import RetrievedPassage

NO_RELEVANT_INFO_MESSAGE = (
    "Sorry, I could not find any relevant information in the knowledge base to answer your question. "
    "Make sure the related documents have been ingested, or try rephrasing the question."
)

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant. If you need to think step-by-step, "
    "use <think>...</think> tags for your reasoning before providing the final answer."
)


def format_context_block(passages: List[RetrievedPassage]) -> str:
    """Label passages with their 1-based rank, in rank order."""
    return "\n\n".join(
        f"[Document {idx}] {passage['page_content']}" for idx, passage in enumerate(passages, start=1)
    )


def build_grounded_prompt(question: str, passages: List[RetrievedPassage]) -> str:
    """Create a grounded prompt that includes retrieved passages."""
    return (
        "Answer the user's question using only the reference material below. "
        "If the material does not contain the relevant information, say so explicitly.\n\n"
        f"Reference material:\n{format_context_block(passages)}\n\n"
        f"User question: {question}\n\n"
        "Give an accurate, detailed answer based on the material above:"
    )


def build_tagging_prompt(document: Dict[str, Any]) -> str:
    """Ask the model to return ``document`` with an added ``tags`` list."""
    return (
        "Read the JSON document below and add a \"tags\" field: a list of 3 to 8 short, "
        "lowercase topic keywords describing its \"content\".\n"
        "Return ONLY the complete JSON document with the added field, with no commentary "
        "and no code fences.\n\n"
        f"{json.dumps(document, ensure_ascii=False, indent=2)}"
    )
