import asyncio

import pytest
from pydantic import BaseModel

from page_agent.agent.views import ActionResult
from page_agent.browser.views import BrowserClosedError, ElementNotFoundError, URLNotAllowedError
from page_agent.controller.registry.service import Registry
from page_agent.controller.registry.views import (
	PAGE_SIGNATURE_KEY,
	ActionContext,
	ActionTimeoutTable,
	DomMutationTable,
	RegisteredAction,
)


class TextParams(BaseModel):
	text: str


async def echo(params: TextParams, ctx: ActionContext) -> ActionResult:
	return ActionResult(extracted_content=params.text)


async def noop(params, ctx: ActionContext) -> None:
	return None


class FakeUrlPage:
	def __init__(self, url: str):
		self.url = url


@pytest.fixture
def registry():
	registry = Registry()
	registry.register_action('echo', 'Echo the text back', echo, param_model=TextParams)
	return registry


class TestRegistration:
	def test_duplicate_name_is_rejected(self, registry):
		with pytest.raises(ValueError, match='already registered'):
			registry.register_action('echo', 'Another echo', echo, param_model=TextParams)

	def test_register_descriptor(self, registry):
		registry.register(RegisteredAction(name='noop', description='Do nothing', function=noop, param_model=TextParams))

		assert 'noop' in registry.registry.actions

	def test_excluded_actions_are_skipped(self):
		registry = Registry(exclude_actions=['echo'])

		assert registry.register_action('echo', 'Echo', echo, param_model=TextParams) is None
		assert registry.registry.actions == {}

	def test_prompt_description_lists_params(self, registry):
		description = registry.get_prompt_description()

		assert description.startswith('Echo the text back:')
		assert "{echo: {'text': {'type': 'string'}}}" in description


class TestAvailability:
	"""Domain lists and page filters restrict where an action may run"""

	def test_unrestricted_action_is_always_available(self, registry):
		assert registry.is_available('echo', None)
		assert registry.is_available('echo', FakeUrlPage('https://anything.org'))

	def test_unknown_action_is_not_available(self, registry):
		assert not registry.is_available('missing')

	def test_domain_restricted_action(self, registry):
		registry.register_action('sheets', 'Edit a sheet', noop, domains=['https://docs.google.com'])

		assert registry.is_available('sheets', FakeUrlPage('https://docs.google.com/spreadsheets/d/1'))
		assert not registry.is_available('sheets', FakeUrlPage('https://evil.com'))
		assert not registry.is_available('sheets', None)

	def test_page_filter(self, registry):
		registry.register_action('pdf_only', 'Read the pdf', noop, page_filter=lambda page: page.url.endswith('.pdf'))

		assert registry.is_available('pdf_only', FakeUrlPage('https://example.com/a.pdf'))
		assert not registry.is_available('pdf_only', FakeUrlPage('https://example.com/a.html'))

	def test_raising_page_filter_means_unavailable(self, registry):
		def broken_filter(page):
			raise RuntimeError('boom')

		registry.register_action('flaky', 'Flaky', noop, page_filter=broken_filter)

		assert not registry.is_available('flaky', FakeUrlPage('https://example.com'))

	def test_schema_only_contains_available_actions(self, registry):
		registry.register_action('sheets', 'Edit a sheet', noop, domains=['https://docs.google.com'])

		on_docs = registry.build_schema_for_page(FakeUrlPage('https://docs.google.com/x'))
		elsewhere = registry.build_schema_for_page(FakeUrlPage('https://example.com'))

		assert set(on_docs['properties']) == {'echo', 'sheets'}
		assert set(elsewhere['properties']) == {'echo'}

	def test_page_action_description_only_lists_unlocked_actions(self, registry):
		registry.register_action('sheets', 'Edit a sheet', noop, domains=['https://docs.google.com'])

		description = registry.get_page_action_description(FakeUrlPage('https://docs.google.com/x'))

		assert 'Edit a sheet' in description
		assert 'Echo the text back' not in description

	def test_action_model_accepts_one_action_per_entry(self, registry):
		action_model = registry.create_action_model()

		action = action_model.model_validate({'echo': {'text': 'hi'}})
		assert action.get_name() == 'echo'
		assert action.get_params() == {'text': 'hi'}

		with pytest.raises(ValueError):
			action_model.model_validate({'echo': {'text': 'hi'}, 'other': {}})


class TestExecute:
	"""execute_action turns every failure into an ActionResult with an error code"""

	async def test_success(self, registry):
		result = await registry.execute_action('echo', {'text': 'hello'})

		assert result.error is None
		assert result.extracted_content == 'hello'

	async def test_unknown_action(self, registry):
		result = await registry.execute_action('fly', {})

		assert result.error_code == 'unknown_action'

	async def test_invalid_params(self, registry):
		result = await registry.execute_action('echo', {'text': 123})

		assert result.error_code == 'validation_error'
		assert 'Invalid parameters' in result.error

	async def test_domain_mismatch_is_a_hard_rejection(self, registry):
		registry.register_action('sheets', 'Edit a sheet', noop, domains=['https://docs.google.com'])

		result = await registry.execute_action('sheets', {}, ActionContext(page=FakeUrlPage('https://evil.com')))

		assert result.error_code == 'action_not_available'

	@pytest.mark.parametrize(
		'error,code',
		[
			(URLNotAllowedError('Navigation to non-allowed URL'), 'url_not_allowed'),
			(ElementNotFoundError('Element with index 3 does not exist'), 'element_not_found'),
			(RuntimeError('unexpected'), 'action_failed'),
		],
	)
	async def test_handler_errors_become_results(self, registry, error, code):
		async def failing(params, ctx):
			raise error

		registry.register_action('failing', 'Always fails', failing)

		result = await registry.execute_action('failing', {})

		assert result.error_code == code
		assert result.is_done is False

	async def test_browser_closed_propagates(self, registry):
		async def closing(params, ctx):
			raise BrowserClosedError('Browser is closed')

		registry.register_action('closing', 'Closes', closing)

		with pytest.raises(BrowserClosedError):
			await registry.execute_action('closing', {})

	async def test_string_and_none_returns(self, registry):
		async def returns_string(params, ctx):
			return 'done that'

		registry.register_action('stringy', 'Returns a string', returns_string)

		assert (await registry.execute_action('stringy', {})).extracted_content == 'done that'
		registry.register_action('noop', 'Nothing', noop)
		assert (await registry.execute_action('noop', {})).error is None

	async def test_sensitive_data_is_substituted(self, registry):
		result = await registry.execute_action(
			'echo',
			{'text': 'user <secret>username</secret>'},
			ActionContext(sensitive_data={'username': 'alice'}),
		)

		assert result.extracted_content == 'user alice'

	async def test_domain_scoped_secrets_only_apply_on_matching_pages(self, registry):
		secrets = {'https://example.com': {'password': 'hunter2'}}

		on_site = await registry.execute_action(
			'echo', {'text': '<secret>password</secret>'}, ActionContext(page=FakeUrlPage('https://example.com/login'), sensitive_data=secrets)
		)
		elsewhere = await registry.execute_action(
			'echo', {'text': '<secret>password</secret>'}, ActionContext(page=FakeUrlPage('https://evil.com'), sensitive_data=secrets)
		)

		assert on_site.extracted_content == 'hunter2'
		assert elsewhere.extracted_content == '<secret>password</secret>'


class TestMutationTracking:
	"""The registry invalidates the session cache when a DOM-mutating action changed the page"""

	async def test_mutating_action_invalidates_the_cache(self, browser_session, fake_page):
		registry = Registry()

		async def poke(params, ctx):
			add_paragraph(fake_page, 'Saved')

		registry.register_action('poke', 'Change the page', poke)
		await browser_session.get_snapshot()

		await registry.execute_action('poke', {}, ActionContext(browser_session=browser_session))

		assert browser_session.cached_snapshot is None

	async def test_mutating_action_without_change_keeps_the_cache(self, browser_session):
		registry = Registry()
		registry.register_action('noop', 'Nothing', noop)
		snapshot = await browser_session.get_snapshot()

		await registry.execute_action('noop', {}, ActionContext(browser_session=browser_session))

		assert browser_session.cached_snapshot is snapshot

	async def test_safe_actions_are_not_tracked(self, browser_session, fake_page):
		registry = Registry(mutation_table=DomMutationTable(safe_actions=frozenset({'poke'})))

		async def poke(params, ctx):
			add_paragraph(fake_page, 'Saved')

		registry.register_action('poke', 'Change the page', poke)
		snapshot = await browser_session.get_snapshot()

		await registry.execute_action('poke', {}, ActionContext(browser_session=browser_session))

		assert browser_session.cached_snapshot is snapshot

	def test_default_mutation_table(self):
		table = DomMutationTable()

		assert not table.is_dom_mutating('scroll')
		assert not table.is_dom_mutating('done')
		assert not table.is_dom_mutating('write_file')
		assert table.is_dom_mutating('click_element_by_index')
		assert table.is_dom_mutating('go_to_url')
		assert table.is_dom_mutating('some_new_plugin_action')

	async def test_signature_after_the_action_is_reported(self, browser_session, fake_page):
		registry = Registry()

		async def poke(params, ctx):
			add_paragraph(fake_page, 'Saved')

		registry.register_action('poke', 'Change the page', poke)

		result = await registry.execute_action('poke', {}, ActionContext(browser_session=browser_session))

		assert result.metadata[PAGE_SIGNATURE_KEY] == await browser_session.change_signature()

	async def test_safe_actions_report_no_signature(self, browser_session):
		registry = Registry(mutation_table=DomMutationTable(safe_actions=frozenset({'echo'})))
		registry.register_action('echo', 'Echo the text back', echo, param_model=TextParams)

		result = await registry.execute_action('echo', {'text': 'hi'}, ActionContext(browser_session=browser_session))

		assert result.metadata is None


class TestActionTimeout:
	"""A handler that does not return in time is cut off and reported as a failed action"""

	async def test_hung_action_times_out(self, browser_session):
		browser_session.browser_profile.action_timeout = 0.5
		registry = Registry()

		async def hang(params, ctx):
			await asyncio.sleep(30)

		registry.register_action('hang', 'Never returns', hang)
		await browser_session.get_snapshot()

		result = await asyncio.wait_for(registry.execute_action('hang', {}, ActionContext(browser_session=browser_session)), timeout=3)

		assert result.error_code == 'action_timeout'
		assert result.error == 'Action hang timed out after 1.0s'
		assert browser_session.cached_snapshot is None

	async def test_explicit_timeout_applies_without_a_session(self, registry):
		async def slow(params, ctx):
			await asyncio.sleep(30)

		registry.register_action('slow', 'Takes forever', slow, timeout=0.1)

		result = await asyncio.wait_for(registry.execute_action('slow', {}), timeout=3)

		assert result.error_code == 'action_timeout'

	def test_no_session_means_no_ceiling(self, registry):
		action = registry.registry.actions['echo']

		assert registry.get_action_timeout(action, TextParams(text='hi')) is None

	def test_ceilings_follow_the_profile(self, browser_profile):
		browser_profile.typing_delay_ms = 50
		table = ActionTimeoutTable()

		assert table.ceiling('go_to_url', TextParams(text=''), browser_profile) == 31.0
		assert table.ceiling('click_element_by_index', TextParams(text=''), browser_profile) == 31.0
		assert table.ceiling('scroll', TextParams(text=''), browser_profile) == 10.0
		assert table.ceiling('input_text', TextParams(text='hello'), browser_profile) == 10.25


def add_paragraph(page, text: str) -> None:
	"""Append a visible <p> with `text` to the fake page's probe result"""
	node_map = page.probe['map']
	element_id = str(len(node_map) + 100)
	text_id = str(len(node_map) + 101)
	node_map[element_id] = {
		'tagName': 'p',
		'xpath': 'html/body/p[9]',
		'attributes': {},
		'isVisible': True,
		'isInteractive': False,
		'isTopElement': True,
		'isInViewport': True,
		'children': [text_id],
	}
	node_map[text_id] = {'type': 'TEXT_NODE', 'text': text, 'isVisible': True}
	node_map['0']['children'].append(element_id)
