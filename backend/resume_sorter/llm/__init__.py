"""
LLM Package — resume scoring over langchain-openai.

Public API::

    from resume_sorter.llm import ScoringGateway, gate_scoring

    reason = gate_scoring(blocked=False, category=category, text=text, truncated=False)
    if reason is None:
        result = await ScoringGateway().score(text, rubric)
"""

from resume_sorter.llm.scoring import ScoringGateway, ScoringResult, SkipReason, gate_scoring

__all__ = ["ScoringGateway", "ScoringResult", "SkipReason", "gate_scoring"]
