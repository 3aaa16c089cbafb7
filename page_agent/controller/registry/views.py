from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from page_agent.utils import match_url_with_domain_pattern

if TYPE_CHECKING:
	from playwright.async_api import Page

	from page_agent.browser.profile import BrowserProfile
	from page_agent.browser.session import BrowserSession
	from page_agent.filesystem.file_system import FileSystem
	from page_agent.llm.base import BaseChatModel

# ActionResult.metadata key holding the page change signature measured right after the action
PAGE_SIGNATURE_KEY = 'page_signature'


class RegisteredAction(BaseModel):
	"""Model for a registered action"""

	name: str
	description: str
	function: Callable[..., Awaitable[Any]]
	param_model: type[BaseModel]

	# filters: provide specific domains or a function to determine whether the action should be available on the given page or not
	domains: list[str] | None = None  # e.g. ['*.google.com', 'www.bing.com', 'yahoo.*]
	page_filter: Callable[[Any], bool] | None = None
	# seconds one run may take, overrides the ceiling derived from the browser profile
	timeout: float | None = None

	model_config = ConfigDict(arbitrary_types_allowed=True)

	def prompt_description(self) -> str:
		"""Get a description of the action for the prompt"""
		skip_keys = ['title']
		s = f'{self.description}: \n'
		s += '{' + str(self.name) + ': '
		s += str(
			{
				k: {sub_k: sub_v for sub_k, sub_v in v.items() if sub_k not in skip_keys}
				for k, v in self.param_model.model_json_schema()['properties'].items()
			}
		)
		s += '}'
		return s


class ActionModel(BaseModel):
	"""Base model for dynamically created action models, exactly one field is set"""

	model_config = ConfigDict(arbitrary_types_allowed=True, extra='forbid')

	@model_validator(mode='before')
	@classmethod
	def _at_most_one_action(cls, data: Any) -> Any:
		if isinstance(data, dict):
			set_actions = [key for key, value in data.items() if value is not None]
			if len(set_actions) > 1:
				raise ValueError(f'An action entry must name exactly one action, got {set_actions}')
		return data

	def get_name(self) -> str | None:
		for name, params in self.model_dump(exclude_unset=True).items():
			if params is not None:
				return name
		return None

	def get_params(self) -> dict[str, Any]:
		for params in self.model_dump(exclude_unset=True).values():
			if params is not None:
				return params
		return {}

	def get_index(self) -> int | None:
		"""Get the index of the action"""
		params = self.get_params()
		index = params.get('index') if isinstance(params, dict) else None
		return index if isinstance(index, int) else None

	def set_index(self, index: int) -> None:
		"""Overwrite the index of the action"""
		action_name = self.get_name()
		if action_name is None:
			return
		action_params = getattr(self, action_name)
		if hasattr(action_params, 'index'):
			action_params.index = index


class ActionRegistry(BaseModel):
	"""Model representing the action registry"""

	actions: dict[str, RegisteredAction] = Field(default_factory=dict)

	@staticmethod
	def _match_domains(domains: list[str] | None, url: str) -> bool:
		"""
		Match a list of domain glob patterns against a URL.

		Args:
			domains: A list of domain patterns that can include glob patterns (* wildcard)
			url: The URL to match against

		Returns:
			True if the URL's domain matches the pattern, False otherwise
		"""
		if domains is None or not url:
			return True

		for domain_pattern in domains:
			if match_url_with_domain_pattern(url, domain_pattern):
				return True
		return False

	def get_prompt_description(self, actions: list[RegisteredAction]) -> str:
		return '\n'.join(action.prompt_description() for action in actions)


class DomMutationTable(BaseModel):
	"""Which action names leave the DOM alone. Every name not listed here counts as DOM-mutating."""

	model_config = ConfigDict(frozen=True)

	safe_actions: frozenset[str] = frozenset(
		{
			'wait',
			'scroll',
			'scroll_to_text',
			'screenshot',
			'done',
			'extract_content',
			'get_dropdown_options',
			'write_file',
			'append_file',
			'read_file',
			'replace_file_str',
		}
	)

	def is_dom_mutating(self, action_name: str) -> bool:
		return action_name not in self.safe_actions


@dataclass
class ActionContext:
	"""Everything a handler may need besides its validated params"""

	browser_session: 'BrowserSession | None' = None
	page: 'Page | None' = None
	file_system: 'FileSystem | None' = None
	page_extraction_llm: 'BaseChatModel | None' = None
	agent_state: Any = None
	sensitive_data: dict[str, str | dict[str, str]] | None = None
	available_file_paths: list[str] | None = None
	context: Any = None


class ActionTimeoutTable(BaseModel):
	"""Ceiling in seconds on one run of an action, derived from the browser profile.

	Actions that may trigger a page load get the navigation timeout plus the settle ceiling.
	Everything else gets two primitive waits (``action_timeout`` each), and typing actions
	additionally get the per-character typing delay for their text.
	"""

	model_config = ConfigDict(frozen=True)

	page_load_actions: frozenset[str] = frozenset(
		{
			'search_google',
			'go_to_url',
			'go_back',
			'reload',
			'open_tab',
			'click_element_by_index',
		}
	)
	typing_actions: frozenset[str] = frozenset({'input_text'})

	def ceiling(self, action_name: str, params: BaseModel, profile: 'BrowserProfile') -> float:
		if action_name in self.page_load_actions:
			return profile.navigation_timeout + profile.maximum_wait_page_load_time

		ceiling = 2 * profile.action_timeout
		if action_name in self.typing_actions:
			text = getattr(params, 'text', None) or ''
			ceiling += len(text) * profile.typing_delay_ms / 1000
		return ceiling
