import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

from page_agent.agent.views import ActionResult
from page_agent.browser.views import BrowserClosedError, BrowserError, ElementNotFoundError, URLNotAllowedError
from page_agent.controller.registry.views import (
	PAGE_SIGNATURE_KEY,
	ActionContext,
	ActionModel,
	ActionRegistry,
	ActionTimeoutTable,
	DomMutationTable,
	RegisteredAction,
)
from page_agent.utils import is_new_tab_page, match_url_with_domain_pattern, time_execution_async

if TYPE_CHECKING:
	from playwright.async_api import Page

Context = TypeVar('Context')

logger = logging.getLogger(__name__)


class NoParamsAction(BaseModel):
	"""
	Accepts absolutely anything in the incoming data
	and discards it, so the final parsed model is empty.
	"""

	model_config = ConfigDict(extra='ignore')


class Registry(Generic[Context]):
	"""Catalogue of named actions, each with a param schema and optional page/domain restrictions."""

	def __init__(
		self,
		exclude_actions: list[str] | None = None,
		mutation_table: DomMutationTable | None = None,
		timeout_table: ActionTimeoutTable | None = None,
	):
		self.registry = ActionRegistry()
		self.exclude_actions = exclude_actions if exclude_actions is not None else []
		self.mutation_table = mutation_table or DomMutationTable()
		self.timeout_table = timeout_table or ActionTimeoutTable()

	def register(self, action: RegisteredAction) -> None:
		if action.name in self.registry.actions:
			raise ValueError(f'Action {action.name!r} is already registered')
		self.registry.actions[action.name] = action

	def register_action(
		self,
		name: str,
		description: str,
		function: Callable[..., Awaitable[Any]],
		param_model: type[BaseModel] | None = None,
		domains: list[str] | None = None,
		page_filter: Callable[[Any], bool] | None = None,
		timeout: float | None = None,
	) -> RegisteredAction | None:
		"""Register `function(params, ctx)` under `name`. Excluded names are skipped."""
		if name in self.exclude_actions:
			logger.debug(f'Skipping excluded action {name}')
			return None

		action = RegisteredAction(
			name=name,
			description=description,
			function=function,
			param_model=param_model or NoParamsAction,
			domains=domains,
			page_filter=page_filter,
			timeout=timeout,
		)
		self.register(action)
		return action

	def is_dom_mutating(self, action_name: str) -> bool:
		return self.mutation_table.is_dom_mutating(action_name)

	def get_action_timeout(self, action: RegisteredAction, params: BaseModel, browser_session: Any = None) -> float | None:
		"""Explicit per-action timeout first, then the ceiling the session profile gives this action"""
		if action.timeout is not None:
			return action.timeout
		if browser_session is None:
			return None
		return self.timeout_table.ceiling(action.name, params, browser_session.browser_profile)

	# --- availability ---

	@staticmethod
	def _action_is_available(action: RegisteredAction, page: 'Page | None') -> bool:
		if action.domains is None and action.page_filter is None:
			return True
		if page is None:
			return False

		url = page.url
		if action.domains is not None and not ActionRegistry._match_domains(action.domains, url):
			return False

		if action.page_filter is not None:
			try:
				return bool(action.page_filter(page))
			except Exception as e:
				logger.debug(f'Page filter for {action.name} raised {type(e).__name__}: {e}, treating as unavailable')
				return False
		return True

	def is_available(self, name: str, page: 'Page | None' = None) -> bool:
		action = self.registry.actions.get(name)
		if action is None:
			return False
		return self._action_is_available(action, page)

	def get_available_actions(self, page: 'Page | None' = None, include_actions: list[str] | None = None) -> list[RegisteredAction]:
		return [
			action
			for name, action in self.registry.actions.items()
			if (include_actions is None or name in include_actions) and self._action_is_available(action, page)
		]

	def create_action_model(self, include_actions: list[str] | None = None, page: 'Page | None' = None) -> type[ActionModel]:
		"""Creates a Pydantic model from registered actions, restricted to the ones available on `page`"""
		available_actions = self.get_available_actions(page, include_actions)

		fields: dict[str, Any] = {
			action.name: (
				Optional[action.param_model],  # noqa: UP045
				Field(default=None, description=action.description),
			)
			for action in available_actions
		}
		return create_model('ActionModel', __base__=ActionModel, **fields)  # type:ignore

	def build_schema_for_page(self, page: 'Page | None' = None) -> dict[str, Any]:
		return self.create_action_model(page=page).model_json_schema()

	def get_prompt_description(self, page: 'Page | None' = None) -> str:
		"""Get a description of all actions for the prompt

		If page is provided, only include actions available for that page. Without a page
		only the unrestricted actions are described.
		"""
		return self.registry.get_prompt_description(self.get_available_actions(page))

	def get_page_action_description(self, page: 'Page') -> str:
		"""Describe only the domain- or filter-restricted actions that `page` unlocks"""
		unrestricted = {action.name for action in self.get_available_actions()}
		page_actions = [action for action in self.get_available_actions(page) if action.name not in unrestricted]
		return self.registry.get_prompt_description(page_actions)

	# --- execution ---

	@time_execution_async('--execute_action')
	async def execute_action(self, action_name: str, params: dict[str, Any], ctx: ActionContext | None = None) -> ActionResult:
		"""Validate, authorise and run one action. Errors come back as a failed ActionResult.

		Only BrowserClosedError is raised, the run cannot continue without a browser.
		"""
		ctx = ctx or ActionContext()

		action = self.registry.actions.get(action_name)
		if action is None:
			return ActionResult(error=f'Action {action_name} not found', error_code='unknown_action')

		try:
			validated_params = action.param_model.model_validate(params or {})
		except ValidationError as e:
			return ActionResult(error=f'Invalid parameters {params} for action {action_name}: {e}', error_code='validation_error')

		browser_session = ctx.browser_session
		page = ctx.page
		if page is None and browser_session is not None:
			page = await browser_session.get_current_page()
			ctx.page = page

		if not self._action_is_available(action, page):
			url = page.url if page is not None else None
			return ActionResult(error=f'Action {action_name} is not available on {url}', error_code='action_not_available')

		if ctx.sensitive_data:
			validated_params = self._replace_sensitive_data(validated_params, ctx.sensitive_data, page.url if page is not None else None)

		track_changes = browser_session is not None and self.is_dom_mutating(action_name)
		signature_before = await self._safe_signature(browser_session) if track_changes else None
		timeout = self.get_action_timeout(action, validated_params, browser_session)

		timed_out = False
		try:
			result = self._to_action_result(await asyncio.wait_for(action.function(validated_params, ctx), timeout=timeout))
		except BrowserClosedError:
			raise
		except asyncio.TimeoutError:
			timed_out = True
			logger.warning(f'⏱️ Action {action_name} did not finish within {timeout}s')
			result = ActionResult(error=f'Action {action_name} timed out after {timeout}s', error_code='action_timeout')
		except URLNotAllowedError as e:
			result = ActionResult(error=str(e), error_code='url_not_allowed')
		except ElementNotFoundError as e:
			result = ActionResult(error=str(e), error_code='element_not_found')
		except ValidationError as e:
			result = ActionResult(error=f'Action {action_name} produced an invalid result: {e}', error_code='validation_error')
		except BrowserError as e:
			result = ActionResult(error=str(e), error_code='action_failed')
		except Exception as e:
			result = ActionResult(error=f'Error executing action {action_name}: {type(e).__name__}: {e}', error_code='action_failed')

		if timed_out and browser_session is not None:
			# the action may have stopped halfway, nothing about the page is known
			browser_session.invalidate()
		elif track_changes:
			assert browser_session is not None
			signature_after = await self._safe_signature(browser_session)
			if signature_before is None or signature_after is None or signature_before != signature_after:
				browser_session.invalidate()
			if signature_after is not None:
				result.metadata = {**(result.metadata or {}), PAGE_SIGNATURE_KEY: signature_after}

		return result

	@staticmethod
	async def _safe_signature(browser_session: Any) -> str | None:
		try:
			return await browser_session.change_signature()
		except BrowserClosedError:
			raise
		except Exception as e:
			logger.debug(f'Could not compute change signature: {type(e).__name__}: {e}')
			return None

	@staticmethod
	def _to_action_result(value: Any) -> ActionResult:
		if isinstance(value, ActionResult):
			return value
		if value is None:
			return ActionResult()
		if isinstance(value, str):
			return ActionResult(extracted_content=value)
		raise ValueError(f'Invalid action result type: {type(value)} of {value}')

	def _replace_sensitive_data(
		self, params: BaseModel, sensitive_data: dict[str, str | dict[str, str]], current_url: str | None = None
	) -> BaseModel:
		"""
		Replaces sensitive data placeholders in params with actual values.

		Args:
			params: The parameter object containing <secret>placeholder</secret> tags
			sensitive_data: Dictionary of sensitive data, either flat {key: value} or scoped {domain_pattern: {key: value}}
			current_url: Optional current URL for domain matching

		Returns:
			BaseModel: The parameter object with placeholders replaced by actual values
		"""
		secret_pattern = re.compile(r'<secret>(.*?)</secret>')

		all_missing_placeholders = set()
		replaced_placeholders = set()

		applicable_secrets: dict[str, str] = {}
		for domain_or_key, content in sensitive_data.items():
			if isinstance(content, dict):
				# domain scoped credentials only apply on matching pages
				if current_url and not is_new_tab_page(current_url):
					if match_url_with_domain_pattern(current_url, domain_or_key):
						applicable_secrets.update(content)
			else:
				applicable_secrets[domain_or_key] = content

		applicable_secrets = {k: v for k, v in applicable_secrets.items() if v}

		def recursively_replace_secrets(value: Any) -> Any:
			if isinstance(value, str):
				for placeholder in secret_pattern.findall(value):
					if placeholder in applicable_secrets:
						value = value.replace(f'<secret>{placeholder}</secret>', applicable_secrets[placeholder])
						replaced_placeholders.add(placeholder)
					else:
						all_missing_placeholders.add(placeholder)
				return value
			elif isinstance(value, dict):
				return {k: recursively_replace_secrets(v) for k, v in value.items()}
			elif isinstance(value, list):
				return [recursively_replace_secrets(v) for v in value]
			return value

		processed_params = recursively_replace_secrets(params.model_dump())

		if replaced_placeholders:
			logger.info(f'🔒 Using sensitive data placeholders: {", ".join(sorted(replaced_placeholders))}')
		if all_missing_placeholders:
			logger.warning(f'Missing or empty keys in sensitive_data dictionary: {", ".join(sorted(all_missing_placeholders))}')

		return type(params).model_validate(processed_params)
