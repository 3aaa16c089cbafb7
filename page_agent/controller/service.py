import asyncio
import enum
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar
from urllib.parse import quote_plus

import markdownify
from pydantic import BaseModel

from page_agent.agent.views import ActionResult
from page_agent.browser.session import BrowserSession
from page_agent.browser.views import BrowserError
from page_agent.controller.registry.service import Registry
from page_agent.controller.registry.views import ActionContext, ActionModel, DomMutationTable, RegisteredAction
from page_agent.controller.views import (
	ClickElementAction,
	CloseTabAction,
	DoneAction,
	DropdownOptionsAction,
	ExtractContentAction,
	GoToUrlAction,
	InputTextAction,
	NoParamsAction,
	OpenTabAction,
	ReadFileAction,
	ReplaceFileStrAction,
	ScrollAction,
	ScrollToTextAction,
	SearchGoogleAction,
	SelectDropdownOptionAction,
	SendKeysAction,
	StructuredOutputAction,
	SwitchTabAction,
	WaitAction,
	WriteFileAction,
)
from page_agent.filesystem.file_system import FileSystem
from page_agent.llm.base import BaseChatModel
from page_agent.llm.messages import UserMessage
from page_agent.utils import time_execution_async

logger = logging.getLogger(__name__)

Context = TypeVar('Context')

T = TypeVar('T', bound=BaseModel)

MAX_EXTRACT_CHARS = 30000
MAX_WAIT_SECONDS = 10
EXTRACTION_LLM_TIMEOUT = 60.0
# reading and converting the page html before the extraction call
EXTRACTION_PAGE_READ_TIMEOUT = 15.0

NETWORK_ERROR_MARKERS = [
	'ERR_NAME_NOT_RESOLVED',
	'ERR_INTERNET_DISCONNECTED',
	'ERR_CONNECTION_REFUSED',
	'ERR_TIMED_OUT',
	'net::',
]


def _require_session(ctx: ActionContext) -> BrowserSession:
	if ctx.browser_session is None:
		raise BrowserError('This action needs a browser session')
	return ctx.browser_session


def _require_file_system(ctx: ActionContext) -> FileSystem:
	if ctx.file_system is None:
		raise BrowserError('This action needs a file system')
	return ctx.file_system


class Controller(Generic[Context]):
	"""Default action catalogue, registered explicitly by feature area."""

	def __init__(
		self,
		exclude_actions: list[str] | None = None,
		output_model: type[T] | None = None,
		mutation_table: DomMutationTable | None = None,
		display_files_in_done_text: bool = True,
	):
		self.registry = Registry[Context](exclude_actions, mutation_table=mutation_table)
		self.display_files_in_done_text = display_files_in_done_text

		self._register_navigation_actions()
		self._register_interaction_actions()
		self._register_tab_actions()
		self._register_scroll_actions()
		self._register_content_actions()
		self._register_file_actions()
		self._register_done_action(output_model)

	# Navigation -------------------------------------------------------------

	def _register_navigation_actions(self) -> None:
		async def search_google(params: SearchGoogleAction, ctx: ActionContext) -> ActionResult:
			browser_session = _require_session(ctx)
			search_url = f'https://www.google.com/search?q={quote_plus(params.query)}&udm=14'
			await browser_session.navigate(search_url)

			msg = f'🔍  Searched for "{params.query}" in Google'
			logger.info(msg)
			return ActionResult(
				extracted_content=msg, include_in_memory=True, long_term_memory=f"Searched Google for '{params.query}'"
			)

		async def go_to_url(params: GoToUrlAction, ctx: ActionContext) -> ActionResult:
			browser_session = _require_session(ctx)
			try:
				await browser_session.navigate(params.url, new_tab=params.new_tab)
			except BrowserError:
				raise
			except Exception as e:
				error_msg = str(e)
				if any(marker in error_msg for marker in NETWORK_ERROR_MARKERS):
					site_unavailable_msg = f'Site unavailable: {params.url} - {error_msg}'
					browser_session.logger.warning(f'⚠️ {site_unavailable_msg}')
					raise BrowserError(site_unavailable_msg) from e
				raise

			if params.new_tab:
				memory = f'Opened new tab with URL {params.url}'
				msg = f'🔗  Opened new tab with url {params.url}'
			else:
				memory = f'Navigated to {params.url}'
				msg = f'🔗 {memory}'
			logger.info(msg)
			return ActionResult(extracted_content=msg, include_in_memory=True, long_term_memory=memory)

		async def go_back(_: NoParamsAction, ctx: ActionContext) -> ActionResult:
			await _require_session(ctx).go_back()
			msg = '🔙  Navigated back'
			logger.info(msg)
			return ActionResult(extracted_content=msg)

		async def reload(_: NoParamsAction, ctx: ActionContext) -> ActionResult:
			await _require_session(ctx).reload()
			msg = '🔄  Reloaded the page'
			logger.info(msg)
			return ActionResult(extracted_content=msg)

		async def wait(params: WaitAction, ctx: ActionContext) -> ActionResult:
			seconds = min(max(params.seconds, 0), MAX_WAIT_SECONDS)
			msg = f'🕒  Waiting for {seconds} seconds'
			logger.info(msg)
			await asyncio.sleep(seconds)
			return ActionResult(extracted_content=msg)

		self.registry.register_action(
			'search_google',
			'Search the query in Google, the query should be a search query like humans search in Google, concrete and not vague or super long.',
			search_google,
			param_model=SearchGoogleAction,
		)
		self.registry.register_action(
			'go_to_url',
			'Navigate to URL, set new_tab=True to open in new tab, False to navigate in current tab',
			go_to_url,
			param_model=GoToUrlAction,
		)
		self.registry.register_action('go_back', 'Go back', go_back)
		self.registry.register_action('reload', 'Reload the current page', reload)
		self.registry.register_action(
			'wait',
			f'Wait for x seconds default 3 (max {MAX_WAIT_SECONDS} seconds). This can be used to wait until the page is fully loaded.',
			wait,
			param_model=WaitAction,
			timeout=MAX_WAIT_SECONDS + 1,
		)

	# Element interaction ----------------------------------------------------

	def _register_interaction_actions(self) -> None:
		async def click_element_by_index(params: ClickElementAction, ctx: ActionContext) -> ActionResult:
			browser_session = _require_session(ctx)
			element = browser_session.get_element_by_index(params.index)
			element_text = element.get_all_text_till_next_clickable_element(max_depth=2)

			await browser_session.click_by_index(params.index)

			msg = f'🖱️  Clicked button with index {params.index}: {element_text}'
			logger.info(msg)
			return ActionResult(
				extracted_content=msg,
				include_in_memory=True,
				long_term_memory=f'Clicked element {params.index} <{element.tag_name}> {element_text[:50]}'.strip(),
			)

		async def input_text(params: InputTextAction, ctx: ActionContext) -> ActionResult:
			browser_session = _require_session(ctx)
			await browser_session.type_by_index(params.index, params.text)

			if ctx.sensitive_data:
				msg = f'⌨️  Input sensitive data into index {params.index}'
				memory = f'Input sensitive data into element {params.index}.'
			else:
				msg = f'⌨️  Input {params.text} into index {params.index}'
				memory = f"Input '{params.text}' into element {params.index}."
			logger.info(msg)
			return ActionResult(extracted_content=msg, include_in_memory=True, long_term_memory=memory)

		async def send_keys(params: SendKeysAction, ctx: ActionContext) -> ActionResult:
			await _require_session(ctx).send_keys(params.keys)
			msg = f'⌨️  Sent keys: {params.keys}'
			logger.info(msg)
			return ActionResult(extracted_content=msg, include_in_memory=True, long_term_memory=f'Sent keys: {params.keys}')

		async def get_dropdown_options(params: DropdownOptionsAction, ctx: ActionContext) -> ActionResult:
			options = await _require_session(ctx).get_dropdown_options(params.index)
			if not options:
				return ActionResult(extracted_content=f'No options found in dropdown {params.index}', include_in_memory=True)

			lines = [f'{option["index"]}: text={json.dumps(option["text"])}' for option in options]
			msg = '\n'.join(lines) + '\nUse the exact text string in select_dropdown_option'
			logger.info(f'📋 Dropdown {params.index} has {len(options)} options')
			return ActionResult(
				extracted_content=msg,
				include_in_memory=True,
				long_term_memory=f'Found {len(options)} options in dropdown {params.index}',
				include_extracted_content_only_once=True,
			)

		async def select_dropdown_option(params: SelectDropdownOptionAction, ctx: ActionContext) -> ActionResult:
			selected = await _require_session(ctx).select_dropdown_option(params.index, params.text)
			msg = f'Selected option {params.text} with value {selected}'
			logger.info(f'✅ {msg}')
			return ActionResult(extracted_content=msg, include_in_memory=True, long_term_memory=msg)

		self.registry.register_action(
			'click_element_by_index', 'Click element by index', click_element_by_index, param_model=ClickElementAction
		)
		self.registry.register_action(
			'input_text', 'Click and input text into a input interactive element', input_text, param_model=InputTextAction
		)
		self.registry.register_action(
			'send_keys',
			'Send strings of special keys like Escape, Backspace, Insert, PageDown, Delete, Enter, or shortcuts such as `Control+o`, `Control+Shift+T`',
			send_keys,
			param_model=SendKeysAction,
		)
		self.registry.register_action(
			'get_dropdown_options',
			'Get all options from a native dropdown (<select>) element',
			get_dropdown_options,
			param_model=DropdownOptionsAction,
		)
		self.registry.register_action(
			'select_dropdown_option',
			'Select dropdown option for interactive element index by the text of the option you want to select',
			select_dropdown_option,
			param_model=SelectDropdownOptionAction,
		)

	# Tabs -------------------------------------------------------------------

	def _register_tab_actions(self) -> None:
		async def switch_tab(params: SwitchTabAction, ctx: ActionContext) -> ActionResult:
			page = await _require_session(ctx).switch_to_tab(params.page_id)
			msg = f'🔄  Switched to tab #{params.page_id} with url {page.url}'
			logger.info(msg)
			return ActionResult(extracted_content=msg, include_in_memory=True, long_term_memory=f'Switched to tab {params.page_id}')

		async def open_tab(params: OpenTabAction, ctx: ActionContext) -> ActionResult:
			await _require_session(ctx).create_new_tab(params.url)
			msg = f'🔗  Opened new tab with {params.url}'
			logger.info(msg)
			return ActionResult(extracted_content=msg, include_in_memory=True, long_term_memory=f'Opened new tab with URL {params.url}')

		async def close_tab(params: CloseTabAction, ctx: ActionContext) -> ActionResult:
			url = await _require_session(ctx).close_tab(params.page_id)
			msg = f'❌  Closed tab #{params.page_id} with url {url}'
			logger.info(msg)
			return ActionResult(extracted_content=msg, include_in_memory=True, long_term_memory=f'Closed tab {params.page_id}')

		self.registry.register_action('switch_tab', 'Switch tab', switch_tab, param_model=SwitchTabAction)
		self.registry.register_action('open_tab', 'Open a specific url in new tab', open_tab, param_model=OpenTabAction)
		self.registry.register_action('close_tab', 'Close an existing tab', close_tab, param_model=CloseTabAction)

	# Scrolling --------------------------------------------------------------

	def _register_scroll_actions(self) -> None:
		async def scroll(params: ScrollAction, ctx: ActionContext) -> ActionResult:
			browser_session = _require_session(ctx)
			page_height = browser_session.browser_profile.viewport.height
			snapshot = browser_session.cached_snapshot
			if snapshot is not None and snapshot.page_info is not None and snapshot.page_info.viewport_height:
				page_height = snapshot.page_info.viewport_height

			pixels = int(params.num_pages * page_height)
			await browser_session.scroll(pixels if params.down else -pixels)

			direction = 'down' if params.down else 'up'
			if params.num_pages == 1.0:
				long_term_memory = f'Scrolled {direction} the page by one page'
			else:
				long_term_memory = f'Scrolled {direction} the page by {params.num_pages} pages'
			msg = f'🔍 {long_term_memory}'
			logger.info(msg)
			return ActionResult(extracted_content=msg, include_in_memory=True, long_term_memory=long_term_memory)

		async def scroll_to_text(params: ScrollToTextAction, ctx: ActionContext) -> ActionResult:
			if await _require_session(ctx).scroll_to_text(params.text):
				msg = f'🔍  Scrolled to text: {params.text}'
				logger.info(msg)
				return ActionResult(extracted_content=msg, include_in_memory=True, long_term_memory=f'Scrolled to text: {params.text}')

			msg = f"Text '{params.text}' not found or not visible on page"
			logger.info(msg)
			return ActionResult(
				extracted_content=msg,
				include_in_memory=True,
				long_term_memory=f"Tried scrolling to text '{params.text}' but it was not found",
			)

		self.registry.register_action(
			'scroll',
			'Scroll the page by number of pages (set down=True to scroll down, down=False to scroll up, num_pages=number of pages to scroll like 0.5 for half page, 1.0 for one page)',
			scroll,
			param_model=ScrollAction,
		)
		self.registry.register_action(
			'scroll_to_text', 'Scroll to a text in the current page', scroll_to_text, param_model=ScrollToTextAction
		)

	# Content ----------------------------------------------------------------

	def _register_content_actions(self) -> None:
		async def extract_content(params: ExtractContentAction, ctx: ActionContext) -> ActionResult:
			browser_session = _require_session(ctx)
			html = await browser_session.get_page_html()

			strip = [] if params.extract_links else ['a', 'img']
			content = markdownify.markdownify(html, strip=strip)
			content = '\n'.join(line.rstrip() for line in content.splitlines() if line.strip())

			if len(content) > MAX_EXTRACT_CHARS:
				content = content[:MAX_EXTRACT_CHARS] + f'\n\n[Content truncated at {MAX_EXTRACT_CHARS // 1000}k characters]'

			llm = ctx.page_extraction_llm
			if not params.query or llm is None:
				msg = f'📄  Extracted page content\n{content}'
				logger.info(f'📄 Extracted {len(content)} characters of page content')
				return ActionResult(
					extracted_content=msg,
					include_extracted_content_only_once=True,
					long_term_memory=f'Extracted {len(content)} characters of page content',
				)

			prompt = (
				'You convert websites into structured information. Extract information from this webpage based on the query. '
				'Focus only on content relevant to the query. If the query is vague, does not make sense for the page, '
				'or the information is not available, explain the content of the page and say that the requested '
				f'information is not available. Respond in JSON format.\n\nQuery: {params.query}\n\nWebsite:\n{content}'
			)
			try:
				response = await asyncio.wait_for(llm.ainvoke([UserMessage(content=prompt)]), timeout=EXTRACTION_LLM_TIMEOUT)
			except asyncio.TimeoutError:
				logger.warning(f'⏱️ Extraction model did not answer within {EXTRACTION_LLM_TIMEOUT}s')
				return ActionResult(
					error=f"Extraction for query '{params.query}' timed out after {EXTRACTION_LLM_TIMEOUT}s",
					error_code='action_timeout',
				)
			msg = f"📄  Extraction for query: '{params.query}'\n\nResult:\n{response.completion}"
			logger.info(f"📄 Extracted data for query: '{params.query[:50]}'")
			return ActionResult(
				extracted_content=msg,
				include_extracted_content_only_once=True,
				long_term_memory=f"Extracted data for query '{params.query}'",
			)

		async def screenshot(_: NoParamsAction, ctx: ActionContext) -> ActionResult:
			image = await _require_session(ctx).take_screenshot()
			if image is None:
				return ActionResult(error='Failed to take a screenshot')
			msg = '📸  Took a screenshot of the current page'
			logger.info(msg)
			return ActionResult(extracted_content=msg, metadata={'screenshot': image})

		self.registry.register_action(
			'extract_content',
			'Extract page content as markdown. With a query and an extraction model, extract only the information the query asks for. Set extract_links=True only if you need links.',
			extract_content,
			param_model=ExtractContentAction,
			timeout=EXTRACTION_LLM_TIMEOUT + EXTRACTION_PAGE_READ_TIMEOUT,
		)
		self.registry.register_action(
			'screenshot', 'Take a screenshot of the current page to look at it in the next step', screenshot
		)

	# Files ------------------------------------------------------------------

	def _register_file_actions(self) -> None:
		async def write_file(params: WriteFileAction, ctx: ActionContext) -> ActionResult:
			result = await _require_file_system(ctx).write_file(params.file_name, params.content)
			logger.info(f'💾 {result}')
			return ActionResult(extracted_content=result, include_in_memory=True, long_term_memory=result)

		async def append_file(params: WriteFileAction, ctx: ActionContext) -> ActionResult:
			result = await _require_file_system(ctx).append_file(params.file_name, params.content)
			logger.info(f'💾 {result}')
			return ActionResult(extracted_content=result, include_in_memory=True, long_term_memory=result)

		async def read_file(params: ReadFileAction, ctx: ActionContext) -> ActionResult:
			result = await _require_file_system(ctx).read_file(params.file_name)

			max_memory_size = 1000
			if len(result) > max_memory_size:
				lines = result.splitlines()
				display = ''
				lines_count = 0
				for line in lines:
					if len(display) + len(line) < max_memory_size:
						display += line + '\n'
						lines_count += 1
					else:
						break
				remaining_lines = len(lines) - lines_count
				memory = f'{display}{remaining_lines} more lines...' if remaining_lines > 0 else display
			else:
				memory = result
			logger.info(f'💾 {memory}')
			return ActionResult(
				extracted_content=result,
				include_in_memory=True,
				long_term_memory=memory,
				include_extracted_content_only_once=True,
			)

		async def replace_file_str(params: ReplaceFileStrAction, ctx: ActionContext) -> ActionResult:
			result = await _require_file_system(ctx).replace_file_str(params.file_name, params.old_str, params.new_str)
			logger.info(f'💾 {result}')
			return ActionResult(extracted_content=result, include_in_memory=True, long_term_memory=result)

		self.registry.register_action(
			'write_file',
			'Write content to file_name in the file system, replacing it. Allowed extensions are .md, .txt, .json, .csv.',
			write_file,
			param_model=WriteFileAction,
		)
		self.registry.register_action(
			'append_file', 'Append content to an existing file_name in the file system', append_file, param_model=WriteFileAction
		)
		self.registry.register_action('read_file', 'Read file_name from the file system', read_file, param_model=ReadFileAction)
		self.registry.register_action(
			'replace_file_str',
			'Replace old_str with new_str in file_name. old_str must exactly match the string to replace in original text. Recommended tool to mark completed items in todo.md or change specific contents in a file.',
			replace_file_str,
			param_model=ReplaceFileStrAction,
		)

	# Completion -------------------------------------------------------------

	def _register_done_action(self, output_model: type[T] | None) -> None:
		if output_model is not None:

			async def structured_done(params: StructuredOutputAction, ctx: ActionContext) -> ActionResult:
				output_dict = params.data.model_dump()

				# Enums are not serializable, convert to string
				for key, value in output_dict.items():
					if isinstance(value, enum.Enum):
						output_dict[key] = value.value

				return ActionResult(
					is_done=params.is_done,
					success=params.success,
					extracted_content=json.dumps(output_dict),
					long_term_memory=f'Task completed. Success Status: {params.success}',
				)

			self.registry.register_action(
				'done',
				'Complete task - with return data and if the task is finished (success=True) or not yet completely finished (success=False), because last step is reached',
				structured_done,
				param_model=StructuredOutputAction[output_model],
			)
			return

		async def done(params: DoneAction, ctx: ActionContext) -> ActionResult:
			user_message = params.text

			len_text = len(params.text)
			len_max_memory = 100
			memory = f'Task completed: {params.success} - {params.text[:len_max_memory]}'
			if len_text > len_max_memory:
				memory += f' - {len_text - len_max_memory} more characters'

			attachments = []
			file_system = ctx.file_system
			if params.files_to_display and file_system is not None:
				file_msg = ''
				for file_name in params.files_to_display:
					if file_name == 'todo.md':
						continue
					file_content = file_system.display_file(file_name)
					if file_content:
						file_msg += f'\n\n{file_name}:\n{file_content}'
						attachments.append(str(file_system.get_dir() / file_name))
				if file_msg and self.display_files_in_done_text:
					user_message += '\n\nAttachments:' + file_msg
				elif not attachments:
					logger.warning('Agent wanted to display files but none were found')

			return ActionResult(
				is_done=params.is_done,
				success=params.success,
				extracted_content=user_message,
				long_term_memory=memory,
				attachments=attachments,
			)

		self.registry.register_action(
			'done',
			'Complete task - provide a summary of results for the user. Set success=True if task completed successfully, false otherwise. Text should be your response to the user summarizing results. Include files you would like to display to the user in files_to_display.',
			done,
			param_model=DoneAction,
		)

	# Register ---------------------------------------------------------------

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
		"""Register a custom action, e.g. a site specific plugin limited by `domains`"""
		return self.registry.register_action(name, description, function, param_model, domains, page_filter, timeout)

	# Act --------------------------------------------------------------------

	@time_execution_async('--act')
	async def act(
		self,
		action: ActionModel,
		browser_session: BrowserSession | None,
		#
		page_extraction_llm: BaseChatModel | None = None,
		sensitive_data: dict[str, str | dict[str, str]] | None = None,
		available_file_paths: list[str] | None = None,
		file_system: FileSystem | None = None,
		agent_state: Any = None,
		#
		context: Context | None = None,
	) -> ActionResult:
		"""Execute an action"""
		action_name = action.get_name()
		if action_name is None:
			return ActionResult()

		ctx = ActionContext(
			browser_session=browser_session,
			file_system=file_system,
			page_extraction_llm=page_extraction_llm,
			agent_state=agent_state,
			sensitive_data=sensitive_data,
			available_file_paths=available_file_paths,
			context=context,
		)
		return await self.registry.execute_action(action_name, action.get_params(), ctx)
