"""LLM configuration for GitHub Models API.

Every intake agent persona shares one chat model; the persona is selected by
its system prompt (see ``intake.agents.prompts``), not by the model.
"""

from langchain_openai import ChatOpenAI
from langchain_core.language_models import BaseChatModel
from intake.config.settings import settings
from typing import Optional
from pydantic import SecretStr
import logging

logger = logging.getLogger(__name__)

_intake_model: Optional[BaseChatModel] = None


def _create_model(model_name: str) -> BaseChatModel:
    """Instantiate a ChatOpenAI client pointed at the GitHub Models endpoint."""
    logger.info(f"Creating GitHub Models client: {model_name}")
    return ChatOpenAI(
        base_url=settings.github_models_endpoint,
        api_key=SecretStr(settings.github_token or ""),
        model=model_name,
        temperature=settings.model_temperature,
        max_completion_tokens=settings.model_max_tokens,
    )


def get_intake_model() -> BaseChatModel:
    """Shared chat model for all intake agents (created lazily)."""
    global _intake_model

    if _intake_model is None:
        if not settings.github_token:
            logger.warning("GITHUB_TOKEN is not configured; model calls will fail")
        _intake_model = _create_model(settings.model_name)
    return _intake_model
