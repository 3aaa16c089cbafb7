"""
Boundary to the reasoning service. Any object with a `model` name, a `provider` and an async
`ainvoke(messages, output_format=None)` satisfies it.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeVar, overload

from pydantic import BaseModel

from page_agent.llm.exceptions import ModelProviderError, ModelRateLimitError
from page_agent.llm.messages import BaseMessage
from page_agent.llm.views import ChatInvokeCompletion

T = TypeVar('T', bound=BaseModel)

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = (500, 502, 503, 504, 529)


def _is_retryable_server_error(exception: BaseException) -> bool:
	"""5xx style failures worth another attempt"""
	status_code = getattr(exception, 'status_code', None)
	if status_code is None and hasattr(exception, 'response'):
		status_code = getattr(exception.response, 'status_code', None)
	if status_code in RETRYABLE_STATUS_CODES:
		return True

	error_msg = str(exception).lower()
	return any(
		pattern in error_msg
		for pattern in [
			'service unavailable',
			'internal server error',
			'bad gateway',
			'overloaded',
		]
	)


def _backoff_delay(attempt: int, initial_delay: float, exponential_base: float, max_delay: float, jitter: bool) -> float:
	delay = min(initial_delay * (exponential_base**attempt), max_delay)
	if jitter:
		jitter_amount = delay * 0.25
		delay = max(0.1, delay + random.uniform(-jitter_amount, jitter_amount))
	return delay


async def exponential_backoff_retry(
	func: Callable[[], Awaitable[Any]],
	rate_limit_error_types: tuple[type[BaseException], ...] = (ModelRateLimitError,),
	server_error_types: tuple[type[BaseException], ...] = (ModelProviderError,),
	max_retries: int = 3,
	initial_delay: float = 1.0,
	exponential_base: float = 2.0,
	max_delay: float = 60.0,
	jitter: bool = True,
) -> Any:
	"""
	Retry a coroutine factory with exponential backoff on rate-limit and server errors.

	Args:
		func: Zero-argument callable returning the awaitable to retry
		rate_limit_error_types: Exceptions that indicate rate limiting (429, etc.)
		server_error_types: Exceptions for server errors, retried only when the status is 5xx
		max_retries: Maximum number of retry attempts
		initial_delay: Initial delay in seconds
		exponential_base: Base for exponential backoff
		max_delay: Maximum delay between retries in seconds
		jitter: Whether to add random jitter to the delay

	Raises:
		The last exception encountered if all retries fail
	"""
	for attempt in range(max_retries + 1):  # +1 because first attempt is not a retry
		try:
			return await func()

		except rate_limit_error_types as e:
			if attempt == max_retries:
				logger.error(f'Rate limit retry failed after {max_retries} attempts: {e}')
				raise
			delay = _backoff_delay(attempt, initial_delay, exponential_base, max_delay, jitter)
			logger.warning(f'Rate limit error (attempt {attempt + 1}/{max_retries + 1}): {e}. Retrying in {delay:.1f} seconds...')
			await asyncio.sleep(delay)

		except server_error_types as e:
			if not _is_retryable_server_error(e) or attempt == max_retries:
				raise
			# server errors start with shorter delays
			delay = _backoff_delay(attempt, initial_delay * 0.5, exponential_base, max_delay, jitter)
			logger.warning(f'Server error (attempt {attempt + 1}/{max_retries + 1}): {e}. Retrying in {delay:.1f} seconds...')
			await asyncio.sleep(delay)


class BaseChatModel(Protocol):
	model: str

	@property
	def provider(self) -> str: ...

	@property
	def name(self) -> str: ...

	@overload
	async def ainvoke(self, messages: list[BaseMessage], output_format: None = None) -> ChatInvokeCompletion[str]: ...

	@overload
	async def ainvoke(self, messages: list[BaseMessage], output_format: type[T]) -> ChatInvokeCompletion[T]: ...

	async def ainvoke(
		self, messages: list[BaseMessage], output_format: type[T] | None = None
	) -> ChatInvokeCompletion[T] | ChatInvokeCompletion[str]: ...

	@classmethod
	def __get_pydantic_core_schema__(
		cls,
		source_type: type,
		handler: Any,
	) -> Any:
		"""
		Allow this Protocol to be used in Pydantic models -> very useful to typesafe the agent settings for example.
		Returns a schema that allows any object (since this is a Protocol).
		"""
		from pydantic_core import core_schema

		return core_schema.any_schema()
