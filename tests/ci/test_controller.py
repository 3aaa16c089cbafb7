import asyncio
import base64
import json

import pytest
from pydantic import BaseModel, ValidationError

from page_agent.agent.views import ActionResult
from page_agent.browser.session import BrowserSession
from page_agent.controller.service import Controller
from page_agent.filesystem.file_system import FileSystem
from tests.ci.conftest import MockLLM

DEFAULT_ACTIONS = {
	'search_google',
	'go_to_url',
	'go_back',
	'reload',
	'wait',
	'click_element_by_index',
	'input_text',
	'send_keys',
	'get_dropdown_options',
	'select_dropdown_option',
	'switch_tab',
	'open_tab',
	'close_tab',
	'scroll',
	'scroll_to_text',
	'extract_content',
	'screenshot',
	'write_file',
	'append_file',
	'read_file',
	'replace_file_str',
	'done',
}


class StalledLLM(MockLLM):
	"""Extraction model that never answers"""

	async def ainvoke(self, messages: list, output_format=None):
		self.calls.append(list(messages))
		await asyncio.sleep(30)


@pytest.fixture
def controller():
	return Controller()


@pytest.fixture
def file_system(tmp_path):
	return FileSystem(tmp_path / 'fs')


async def run(controller: Controller, name: str, params: dict, browser_session=None, **kwargs) -> ActionResult:
	action = controller.registry.create_action_model().model_validate({name: params})
	return await controller.act(action, browser_session, **kwargs)


class TestCatalogue:
	def test_default_actions_are_registered(self, controller):
		assert set(controller.registry.registry.actions) == DEFAULT_ACTIONS

	def test_excluded_actions(self):
		controller = Controller(exclude_actions=['search_google', 'screenshot'])

		assert 'search_google' not in controller.registry.registry.actions
		assert 'screenshot' not in controller.registry.registry.actions
		assert 'go_to_url' in controller.registry.registry.actions

	async def test_custom_domain_action(self, controller, browser_session):
		async def archive(params, ctx):
			return 'archived'

		controller.register_action('archive_mail', 'Archive the open mail', archive, domains=['https://mail.example.org'])

		result = await run(controller, 'archive_mail', {}, browser_session)

		assert result.error_code == 'action_not_available'


class TestDone:
	async def test_done_success(self, controller):
		result = await run(controller, 'done', {'text': 'All finished', 'success': True})

		assert result.is_done is True
		assert result.success is True
		assert result.extracted_content == 'All finished'

	async def test_success_without_done_is_rejected(self, controller):
		result = await run(controller, 'done', {'text': 'Nope', 'success': True, 'is_done': False})

		assert result.error_code == 'validation_error'
		assert result.is_done is False

	async def test_done_requires_text(self, controller):
		result = await run(controller, 'done', {'success': True})

		assert result.error_code == 'validation_error'

	def test_success_on_a_non_terminal_result_is_invalid(self):
		with pytest.raises(ValidationError):
			ActionResult(success=True)

	async def test_done_attaches_files(self, controller, file_system):
		await file_system.write_file('results.md', '# Findings\n- item one')

		result = await run(
			controller,
			'done',
			{'text': 'See the results', 'success': True, 'files_to_display': ['results.md']},
			file_system=file_system,
		)

		assert 'Attachments:' in result.extracted_content
		assert '- item one' in result.extracted_content
		assert result.attachments == [str(file_system.get_dir() / 'results.md')]

	async def test_structured_output(self):
		class Answer(BaseModel):
			answer: str
			count: int

		controller = Controller(output_model=Answer)

		result = await run(controller, 'done', {'data': {'answer': 'forty two', 'count': 42}})

		assert result.is_done is True
		assert result.success is True
		assert json.loads(result.extracted_content) == {'answer': 'forty two', 'count': 42}


class TestInteractionActions:
	async def test_click_unknown_index(self, controller, browser_session):
		await browser_session.get_snapshot()

		result = await run(controller, 'click_element_by_index', {'index': 99}, browser_session)

		assert result.error_code == 'element_not_found'
		assert 'index 99' in result.error

	async def test_click(self, controller, browser_session, fake_page):
		await browser_session.get_snapshot()

		result = await run(controller, 'click_element_by_index', {'index': 0}, browser_session)

		assert result.error is None
		assert 'Clicked button with index 0: Submit' in result.extracted_content
		assert ('click', 'xpath=/html/body/button[1]') in fake_page.actions

	async def test_input_text(self, controller, browser_session, fake_page):
		await browser_session.get_snapshot()

		result = await run(controller, 'input_text', {'index': 1, 'text': 'hello'}, browser_session)

		assert result.error is None
		assert ('type', 'xpath=/html/body/input[1]', 'hello') in fake_page.actions
		assert result.long_term_memory == "Input 'hello' into element 1."

	async def test_input_text_hides_sensitive_values(self, controller, browser_session):
		await browser_session.get_snapshot()

		result = await run(
			controller,
			'input_text',
			{'index': 1, 'text': '<secret>password</secret>'},
			browser_session,
			sensitive_data={'password': 'hunter2'},
		)

		assert 'hunter2' not in result.extracted_content
		assert 'sensitive data' in result.extracted_content

	async def test_send_keys(self, controller, browser_session, fake_page):
		result = await run(controller, 'send_keys', {'keys': 'Enter'}, browser_session)

		assert result.error is None
		assert ('press', 'Enter') in fake_page.actions

	async def test_dropdown(self, controller, browser_session, fake_page):
		fake_page.dropdown_options = [{'index': 0, 'text': 'Red', 'value': 'r'}, {'index': 1, 'text': 'Blue', 'value': 'b'}]
		await browser_session.get_snapshot()

		options = await run(controller, 'get_dropdown_options', {'index': 1}, browser_session)
		await browser_session.get_snapshot()
		selected = await run(controller, 'select_dropdown_option', {'index': 1, 'text': 'Blue'}, browser_session)

		assert '0: text="Red"' in options.extracted_content
		assert '1: text="Blue"' in options.extracted_content
		assert selected.error is None
		assert ('select', 'xpath=/html/body/input[1]', 'Blue') in fake_page.actions


class TestNavigationActions:
	async def test_go_to_url(self, controller, browser_session, fake_page):
		result = await run(controller, 'go_to_url', {'url': 'https://example.com/docs'}, browser_session)

		assert result.error is None
		assert fake_page.url == 'https://example.com/docs'
		assert result.long_term_memory == 'Navigated to https://example.com/docs'

	async def test_go_to_disallowed_url(self, controller, browser_profile, fake_page):
		restricted = BrowserSession(browser_profile=browser_profile, page=fake_page, allowed_domains=['https://example.com'])
		try:
			result = await run(controller, 'go_to_url', {'url': 'https://evil.com'}, restricted)
		finally:
			await restricted.stop()

		assert result.error_code == 'url_not_allowed'
		assert fake_page.url == 'https://example.com/'

	async def test_search_google(self, controller, browser_session, fake_page):
		await run(controller, 'search_google', {'query': 'page agents'}, browser_session)

		assert fake_page.url == 'https://www.google.com/search?q=page+agents&udm=14'

	async def test_open_tab(self, controller, browser_session, fake_context):
		result = await run(controller, 'open_tab', {'url': 'https://example.com/two'}, browser_session)

		assert result.error is None
		assert len(fake_context.pages) == 2
		assert (await browser_session.get_current_page()).url == 'https://example.com/two'

	async def test_wait_is_capped(self, controller):
		result = await run(controller, 'wait', {'seconds': 0})

		assert result.extracted_content == '🕒  Waiting for 0 seconds'


class TestViewportActions:
	async def test_scroll_down_one_page(self, controller, browser_session, fake_page):
		await browser_session.get_snapshot()

		result = await run(controller, 'scroll', {}, browser_session)

		assert fake_page.scrolls == [1000]
		assert result.long_term_memory == 'Scrolled down the page by one page'

	async def test_scroll_up_half_a_page(self, controller, browser_session, fake_page):
		await browser_session.get_snapshot()

		await run(controller, 'scroll', {'down': False, 'num_pages': 0.5}, browser_session)

		assert fake_page.scrolls == [-500]

	async def test_scroll_to_text(self, controller, browser_session):
		found = await run(controller, 'scroll_to_text', {'text': 'welcome'}, browser_session)
		missing = await run(controller, 'scroll_to_text', {'text': 'nowhere'}, browser_session)

		assert found.extracted_content == '🔍  Scrolled to text: welcome'
		assert 'not found' in missing.extracted_content

	async def test_screenshot(self, controller, browser_session):
		result = await run(controller, 'screenshot', {}, browser_session)

		assert result.metadata == {'screenshot': base64.b64encode(b'\x89PNG fake screenshot').decode('utf-8')}


class TestContentActions:
	async def test_extract_markdown(self, controller, browser_session):
		result = await run(controller, 'extract_content', {}, browser_session)

		assert 'Hello next page' in result.extracted_content
		assert '/next' not in result.extracted_content
		assert result.include_extracted_content_only_once

	async def test_extract_with_links(self, controller, browser_session):
		result = await run(controller, 'extract_content', {'extract_links': True}, browser_session)

		assert '[next page](/next)' in result.extracted_content

	async def test_extract_with_query_uses_the_extraction_model(self, controller, browser_session):
		extraction_llm = MockLLM(['{"title": "Test Page"}'])

		result = await run(
			controller, 'extract_content', {'query': 'the page title'}, browser_session, page_extraction_llm=extraction_llm
		)

		assert result.extracted_content.endswith('Result:\n{"title": "Test Page"}')
		prompt = extraction_llm.calls[0][0].text
		assert 'Query: the page title' in prompt
		assert 'Hello next page' in prompt

	async def test_stalled_extraction_model_times_out(self, controller, browser_session, monkeypatch):
		monkeypatch.setattr('page_agent.controller.service.EXTRACTION_LLM_TIMEOUT', 0.1)
		extraction_llm = StalledLLM(['unused'])

		result = await asyncio.wait_for(
			run(controller, 'extract_content', {'query': 'the page title'}, browser_session, page_extraction_llm=extraction_llm),
			timeout=3,
		)

		assert result.error_code == 'action_timeout'
		assert "Extraction for query 'the page title' timed out" in result.error
		assert len(extraction_llm.calls) == 1


class TestFileActions:
	async def test_write_then_read(self, controller, file_system):
		written = await run(controller, 'write_file', {'file_name': 'notes.md', 'content': 'first line'}, file_system=file_system)
		appended = await run(controller, 'append_file', {'file_name': 'notes.md', 'content': '\nsecond line'}, file_system=file_system)
		read = await run(controller, 'read_file', {'file_name': 'notes.md'}, file_system=file_system)

		assert written.extracted_content == 'Data written to notes.md successfully.'
		assert appended.extracted_content == 'Data appended to notes.md successfully.'
		assert 'first line\nsecond line' in read.extracted_content

	async def test_replace_file_str(self, controller, file_system):
		await file_system.write_file('todo.md', '- [ ] buy milk')

		await run(
			controller,
			'replace_file_str',
			{'file_name': 'todo.md', 'old_str': '- [ ]', 'new_str': '- [x]'},
			file_system=file_system,
		)

		assert file_system.get_todo_contents() == '- [x] buy milk'

	async def test_file_action_without_file_system(self, controller):
		result = await run(controller, 'write_file', {'file_name': 'notes.md', 'content': 'x'})

		assert result.error_code == 'action_failed'
