"""Provider identifiers and fixed protocol markers."""

from __future__ import annotations

from enum import Enum


class Provider(str, Enum):
    OPENAI = "openAI"
    AZURE = "azureOpenAI"
    OPENROUTER = "openrouter"
    ANTHROPIC = "anthropic"
    BEDROCK = "bedrock"
    GOOGLE = "google"
    VERTEXAI = "vertexai"
    DEEPSEEK = "deepseek"
    XAI = "xai"
    MISTRAL = "mistralai"


# Providers that surface reasoning as `additional_kwargs.reasoning.summary`.
OPENAI_LIKE_PROVIDERS = frozenset({Provider.OPENAI, Provider.AZURE})

AGENT_NODE_PREFIX = "agent="
TOOL_NODE_PREFIX = "tools="

MESSAGE_ID_PREFIX = "msg_"
STEP_ID_PREFIX = "step_"
TOOL_CALL_ID_PREFIX = "toolu_"

STEP_KEY_SEPARATOR = "&"
REASONING_KEY_TAG = "reasoning"
POST_REASONING_KEY_TAG = "post-reasoning"
