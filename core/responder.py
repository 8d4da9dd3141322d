"""
Responder — turns a visitor's question into an answer.

Flow:
  1. Spam rules    → drop silently, or flag and answer with the fallback
  2. Keyword rules → canned response, no model call
  3. System prompt → persona + blocked topics + languages + knowledge context
  4. LLM call      → the only slow step; errors propagate to the caller

The job orchestrator owns error reporting, so nothing here catches model
failures.
"""
from __future__ import annotations

import structlog
from typing import Optional

from core.cancellation import CancellationToken
from llm.provider import LLMAdapter
from models.schemas import DataChunk, LLMMessage, Persona, RespondResult, ResponseSource, SpamAction
from rules.engine import RuleMatch, RulesEngine, SpamMatch

logger = structlog.get_logger()


def build_context(chunks: list[DataChunk]) -> str:
    """
    Render knowledge chunks for the system prompt.

    Every chunk is included; the data directory of a personal site is small
    enough to fit the model's context window.
    """
    return "\n\n".join(
        f"[{chunk.metadata.get('description') or chunk.source}]\n{chunk.content}"
        for chunk in chunks
    )


def build_system_prompt(persona: Persona, context: str = "") -> str:
    prompt = persona.system_prompt

    if persona.blocked_topics:
        prompt += f"\n\nDo NOT discuss the following topics: {', '.join(persona.blocked_topics)}."
        prompt += " Politely decline if asked."

    if persona.languages:
        prompt += f"\n\nYou can communicate in: {', '.join(persona.languages)}."
        prompt += " Try to match the visitor's language."

    if context:
        prompt += "\n\n--- Available information ---\n" + context
        prompt += "\n--- End of available information ---"
        prompt += "\n\nUse ONLY the information above to answer questions."
        prompt += " If the information doesn't cover the question, say so honestly."

    return prompt


class Responder:

    def __init__(
        self,
        persona: Persona,
        rules_engine: RulesEngine,
        llm: LLMAdapter,
        chunks: list[DataChunk] = None,
    ):
        self._persona = persona
        self._rules = rules_engine
        self._llm = llm
        self._chunks = chunks or []
        self._system_prompt = build_system_prompt(persona, build_context(self._chunks))

    @property
    def persona(self) -> Persona:
        return self._persona

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    def greeting(self) -> str:
        return self._persona.greeting

    def check_spam(self, message: str) -> Optional[SpamMatch]:
        """Fast spam check, no model call."""
        return self._rules.match_spam(message)

    def check_rules(self, message: str) -> Optional[RuleMatch]:
        """Fast keyword rule check, no model call."""
        return self._rules.match_rule(message)

    async def respond(
        self,
        message: str,
        history: list[LLMMessage] = None,
        token: Optional[CancellationToken] = None,
    ) -> RespondResult:
        spam = self.check_spam(message)
        if spam:
            if spam.action == SpamAction.DROP:
                return RespondResult(content="", source=ResponseSource.RULE, spam=True, drop=True)
            return RespondResult(content=self._persona.fallback, source=ResponseSource.RULE, spam=True)

        rule = self.check_rules(message)
        if rule:
            return RespondResult(content=rule.response, source=ResponseSource.RULE)

        messages = [
            LLMMessage(role="system", content=self._system_prompt),
            *(history or []),
            LLMMessage(role="user", content=message),
        ]
        response = await self._llm.chat(messages, token)

        content = response.content.strip()
        if not content:
            logger.warning("llm_empty_response", llm=self._llm.name)
            return RespondResult(content=self._persona.fallback, source=ResponseSource.FALLBACK)

        logger.info(
            "llm_responded", llm=self._llm.name,
            prompt_tokens=response.prompt_tokens, completion_tokens=response.completion_tokens,
        )
        return RespondResult(content=content, source=ResponseSource.LLM)
