from page_agent.llm.base import BaseChatModel, exponential_backoff_retry
from page_agent.llm.exceptions import ModelError, ModelProviderError, ModelRateLimitError
from page_agent.llm.messages import (
	AssistantMessage,
	BaseMessage,
	ContentPartImageParam,
	ContentPartTextParam,
	ImageURL,
	SystemMessage,
	UserMessage,
)
from page_agent.llm.views import ChatInvokeCompletion, ChatInvokeUsage

__all__ = [
	'BaseChatModel',
	'exponential_backoff_retry',
	'ModelError',
	'ModelProviderError',
	'ModelRateLimitError',
	'BaseMessage',
	'UserMessage',
	'SystemMessage',
	'AssistantMessage',
	'ContentPartTextParam',
	'ContentPartImageParam',
	'ImageURL',
	'ChatInvokeCompletion',
	'ChatInvokeUsage',
]
