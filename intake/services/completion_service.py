"""Text-completion collaborator for the intake agents.

Given the active agent, the session state and the patient's message, the
service returns reply text plus a partial update to the medical data. The
orchestrator treats it as a black box that may be slow or fail.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Protocol

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel, Field

from intake.agents.prompts import AGENT_INSTRUCTIONS, CONCLUSION_HINT, INTAKE_BASE_PROMPT
from intake.agents.question_tracker import get_follow_up_count_for_agent
from intake.config.llm_config import get_intake_model
from intake.config.settings import settings
from intake.models.session import ChatMessage, MedicalData, TrackingState
from intake.models.triage import AgentRole
from intake.utils.llm_helpers import invoke_llm_with_timeout, response_text, strip_md_fences

logger = logging.getLogger(__name__)

HISTORY_WINDOW = 20


class CompletionError(Exception):
    """The completion service could not produce a usable reply."""


class CompletionResult(BaseModel):
    reply: str
    updated_data: Dict[str, Any] = Field(default_factory=dict)


class CompletionService(Protocol):
    async def complete(
        self,
        agent: AgentRole,
        medical_data: MedicalData,
        tracking: TrackingState,
        history: List[ChatMessage],
        message: str,
        offer_conclusion: bool = False,
    ) -> CompletionResult: ...


def build_system_prompt(
    agent: AgentRole,
    medical_data: MedicalData,
    tracking: TrackingState,
    offer_conclusion: bool = False,
) -> str:
    return INTAKE_BASE_PROMPT.format(
        agent=agent.value,
        follow_ups=get_follow_up_count_for_agent(tracking.follow_up_counts, agent),
        max_follow_ups=settings.max_followups_per_stage,
        conclusion_hint=CONCLUSION_HINT if offer_conclusion else "",
        medical_data=medical_data.model_dump_json(
            indent=2, exclude={"current_agent", "clinical_handover"}
        ),
        answered_topics=", ".join(tracking.answered_topics) or "none yet",
        completeness=tracking.completeness,
        agent_instructions=AGENT_INSTRUCTIONS[agent],
    )


def parse_completion(content: str) -> CompletionResult:
    """Parse the model's JSON answer; plain text is accepted as a reply with no update."""
    text = strip_md_fences(content)
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        if not text:
            raise CompletionError("Empty completion")
        logger.warning("Completion was not JSON; using raw text as reply")
        return CompletionResult(reply=text)

    if not isinstance(payload, dict):
        raise CompletionError(f"Unexpected completion payload: {type(payload).__name__}")

    reply = payload.get("reply")
    if not isinstance(reply, str) or not reply.strip():
        raise CompletionError("Completion is missing a reply")

    updated = payload.get("updated_data") or {}
    if not isinstance(updated, dict):
        logger.warning("Ignoring non-object updated_data in completion")
        updated = {}
    return CompletionResult(reply=reply.strip(), updated_data=updated)


class LangChainCompletionService:
    """Completion service backed by a LangChain chat model."""

    def __init__(self, llm: Optional[BaseChatModel] = None, timeout: Optional[float] = None):
        self._llm = llm
        self._timeout = timeout

    @property
    def llm(self) -> BaseChatModel:
        if self._llm is None:
            self._llm = get_intake_model()
        return self._llm

    async def complete(
        self,
        agent: AgentRole,
        medical_data: MedicalData,
        tracking: TrackingState,
        history: List[ChatMessage],
        message: str,
        offer_conclusion: bool = False,
    ) -> CompletionResult:
        messages: List[BaseMessage] = [
            SystemMessage(
                content=build_system_prompt(agent, medical_data, tracking, offer_conclusion)
            )
        ]
        for past in history[-HISTORY_WINDOW:]:
            if past.role == "user":
                messages.append(HumanMessage(content=past.content))
            else:
                messages.append(AIMessage(content=past.content))
        messages.append(HumanMessage(content=message))

        try:
            response = await invoke_llm_with_timeout(self.llm, messages, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise CompletionError("Completion timed out") from e

        return parse_completion(response_text(response))
