import pytest

from page_agent.browser.profile import BrowserProfile
from page_agent.browser.session import BrowserSession
from page_agent.browser.views import BrowserClosedError, BrowserError, ElementNotFoundError, URLNotAllowedError
from tests.ci.conftest import FakeDownload, FakeRequest, element, probe_result, text_block


class TestSnapshotCache:
	"""get_snapshot / invalidate / change_signature"""

	async def test_snapshot_is_cached_until_invalidated(self, browser_session, fake_page):
		first = await browser_session.get_snapshot()
		second = await browser_session.get_snapshot()

		assert first is second
		assert len(fake_page.probe_calls) == 1

	async def test_invalidate_forces_a_rebuild(self, browser_session, fake_page):
		first = await browser_session.get_snapshot()
		browser_session.invalidate()
		second = await browser_session.get_snapshot(force_refresh=False)

		assert second is not first
		assert len(fake_page.probe_calls) == 2

	async def test_invalidate_twice_is_the_same_as_once(self, browser_session):
		await browser_session.get_snapshot()

		browser_session.invalidate()
		browser_session.invalidate()

		assert browser_session.cached_snapshot is None

	async def test_force_refresh_rebuilds(self, browser_session, fake_page):
		first = await browser_session.get_snapshot()
		second = await browser_session.get_snapshot(force_refresh=True)

		assert second is not first
		assert browser_session.cached_snapshot is second

	async def test_snapshot_metadata(self, browser_session, fake_page):
		fake_page.metrics['scroll_y'] = 500

		snapshot = await browser_session.get_snapshot(include_screenshot=True)

		assert snapshot.url == 'https://example.com/'
		assert snapshot.title == 'Example Domain'
		assert [tab.url for tab in snapshot.tabs] == ['https://example.com/']
		assert snapshot.page_info is not None
		assert snapshot.page_info.pixels_above == 500
		assert snapshot.page_info.pixels_below == 1500
		assert snapshot.screenshot is not None
		assert snapshot.is_pdf_viewer is False
		assert '[0]<button type=submit>Submit />' in snapshot.elements_text
		assert snapshot.render().startswith('... 500 pixels above')

	async def test_screenshot_is_added_to_a_cached_snapshot(self, browser_session):
		snapshot = await browser_session.get_snapshot()
		assert snapshot.screenshot is None

		again = await browser_session.get_snapshot(include_screenshot=True)

		assert again is snapshot
		assert again.screenshot is not None

	async def test_pdf_url_sets_pdf_flag(self, browser_session, fake_page):
		fake_page.url = 'https://example.com/report.pdf'

		snapshot = await browser_session.get_snapshot()

		assert snapshot.is_pdf_viewer is True

	async def test_signatures_of_unchanged_page_are_equal(self, browser_session):
		first = await browser_session.get_snapshot()
		second = await browser_session.get_snapshot(force_refresh=True)

		assert first.signature == second.signature
		assert await browser_session.change_signature() == first.signature

	async def test_appended_text_changes_signature(self, browser_session, fake_page):
		snapshot = await browser_session.get_snapshot()
		fake_page.probe = probe_result(
			element('button', 'Submit', index=0, type='submit'),
			element('input', index=1, type='text', name='q', placeholder='Search'),
			text_block('Welcome to the test page'),
			text_block('Your order was saved'),
		)

		assert await browser_session.change_signature() != snapshot.signature

	async def test_change_signature_does_not_touch_the_cache(self, browser_session, fake_page):
		snapshot = await browser_session.get_snapshot()

		await browser_session.change_signature()

		assert browser_session.cached_snapshot is snapshot
		assert fake_page.probe_calls[-1]['doHighlightElements'] is False

	async def test_probe_failure_gives_fallback_snapshot(self, browser_session, fake_page):
		fake_page.probe = RuntimeError('evaluation blocked')

		snapshot = await browser_session.get_snapshot()

		assert snapshot.error is not None
		assert list(snapshot.selector_map) == [0]
		assert any('could not be analysed' in error for error in snapshot.browser_errors)


class TestResolve:
	async def test_resolve_without_snapshot_fails(self, browser_session):
		with pytest.raises(ElementNotFoundError):
			browser_session.resolve(0)

	async def test_resolve_unknown_index_fails(self, browser_session):
		await browser_session.get_snapshot()

		with pytest.raises(ElementNotFoundError) as exc_info:
			browser_session.resolve(42)
		assert exc_info.value.details == {'index': 42}

	async def test_resolve_after_invalidate_fails(self, browser_session):
		await browser_session.get_snapshot()
		browser_session.invalidate()

		with pytest.raises(ElementNotFoundError):
			browser_session.resolve(0)

	async def test_resolve_returns_descriptor(self, browser_session):
		await browser_session.get_snapshot()

		descriptor = browser_session.resolve(0)

		assert descriptor.highlight_index == 0
		assert descriptor.tag_name == 'button'
		assert descriptor.locator_candidates()[0] == 'xpath=/html/body/button[1]'


class TestInteraction:
	"""Click fallback chain and typing"""

	async def test_click_invalidates_the_cache(self, browser_session, fake_page):
		await browser_session.get_snapshot()

		await browser_session.click_by_index(0)

		assert ('click', 'xpath=/html/body/button[1]') in fake_page.actions
		assert browser_session.cached_snapshot is None

	async def test_click_falls_back_to_script_click(self, browser_session, fake_page):
		await browser_session.get_snapshot()
		fake_page.failing_clicks = {'click', 'force_click'}

		await browser_session.click_by_index(0)

		assert fake_page.actions == [('script_click', 'xpath=/html/body/button[1]')]

	async def test_click_falls_back_to_coordinates(self, browser_session, fake_page):
		await browser_session.get_snapshot()
		fake_page.failing_clicks = {'click', 'force_click', 'script_click'}

		await browser_session.click_by_index(0)

		assert fake_page.actions == [('mouse', 60.0, 50.0)]

	async def test_click_uses_css_when_xpath_does_not_match(self, browser_session, fake_page):
		await browser_session.get_snapshot()
		fake_page.missing_selectors = {'xpath=/html/body/button[1]'}

		await browser_session.click_by_index(0)

		assert fake_page.actions[0][1].startswith('css=')

	async def test_click_on_unlocatable_element_fails(self, browser_session, fake_page):
		await browser_session.get_snapshot()
		descriptor = browser_session.resolve(0)
		fake_page.missing_selectors = set(descriptor.locator_candidates())

		with pytest.raises(ElementNotFoundError):
			await browser_session.click_by_index(0)

	async def test_click_opening_a_tab_switches_to_it(self, browser_session, fake_page, fake_context):
		await browser_session.get_snapshot()
		fake_page.on_click = lambda page, selector: fake_context.add_page(url='https://example.com/popup')

		await browser_session.click_by_index(0)

		current = await browser_session.get_current_page()
		assert current.url == 'https://example.com/popup'

	async def test_type_clears_then_types(self, browser_session, fake_page):
		await browser_session.get_snapshot()

		await browser_session.type_by_index(1, 'hello')

		assert fake_page.actions == [
			('fill', 'xpath=/html/body/input[1]', ''),
			('type', 'xpath=/html/body/input[1]', 'hello'),
		]
		assert browser_session.cached_snapshot is None

	async def test_type_ignores_uncleareable_elements(self, browser_session, fake_page):
		await browser_session.get_snapshot()
		fake_page.fill_error = RuntimeError('element is not an input')

		await browser_session.type_by_index(1, 'hello')

		assert fake_page.actions == [('type', 'xpath=/html/body/input[1]', 'hello')]


class TestHealth:
	"""Dead pages are replaced transparently, closed browsers are fatal"""

	async def test_unresponsive_page_is_replaced(self, browser_session, fake_page, fake_context):
		fake_page.health_result = RuntimeError('Target crashed')

		snapshot = await browser_session.get_snapshot()

		assert browser_session.page_replaced is True
		new_page = await browser_session.get_current_page()
		assert new_page is not fake_page
		assert fake_page.closed
		assert new_page.goto_calls == ['https://example.com/']
		assert snapshot.url == 'https://example.com/'
		assert browser_session.health_monitor.replacements == 1

	async def test_closed_page_is_replaced_by_an_open_one(self, browser_session, fake_page, fake_context):
		other = fake_context.add_page(url='https://example.com/other')
		fake_page.closed = True

		await browser_session.get_snapshot()

		assert browser_session.page_replaced is True
		assert await browser_session.get_current_page() is other

	async def test_healthy_page_is_not_replaced(self, browser_session, fake_page):
		await browser_session.get_snapshot()

		assert browser_session.page_replaced is False
		assert await browser_session.get_current_page() is fake_page

	async def test_closed_context_raises(self, browser_session, fake_context):
		await fake_context.close()

		assert browser_session.is_connected() is False
		with pytest.raises(BrowserClosedError):
			await browser_session.get_snapshot()


class TestSettleWait:
	async def test_stuck_requests_leave_an_advisory(self, browser_profile, fake_page):
		fake_page.stuck_requests = [FakeRequest('https://example.com/app.js')]
		session = BrowserSession(browser_profile=browser_profile, page=fake_page, maximum_wait_page_load_time=0.3)

		snapshot = await session.get_snapshot()

		assert any('Page loading was aborted' in error for error in snapshot.browser_errors)
		assert session.pop_advisories() == []
		assert fake_page.listeners['request'] == []

	async def test_tracking_requests_are_ignored(self, browser_profile, fake_page):
		fake_page.stuck_requests = [FakeRequest('https://analytics.example.com/collect')]
		session = BrowserSession(browser_profile=browser_profile, page=fake_page, maximum_wait_page_load_time=0.3)

		snapshot = await session.get_snapshot()

		assert snapshot.browser_errors == []

	async def test_new_tab_page_skips_the_wait(self, browser_session, fake_page):
		fake_page.url = 'about:blank'

		snapshot = await browser_session.get_snapshot()

		assert 'request' not in fake_page.listeners
		assert snapshot.selector_map == {}


class TestNavigation:
	"""Domain allow-list on navigation"""

	@pytest.fixture
	def restricted_session(self, browser_profile, fake_page):
		return BrowserSession(browser_profile=browser_profile, page=fake_page, allowed_domains=['https://example.com'])

	async def test_allowed_navigation(self, restricted_session, fake_page):
		await restricted_session.navigate('https://example.com/path')

		assert fake_page.url == 'https://example.com/path'

	async def test_disallowed_navigation_is_rejected(self, restricted_session, fake_page):
		with pytest.raises(URLNotAllowedError):
			await restricted_session.navigate('https://evil.com')

		assert fake_page.goto_calls == []

	async def test_new_tab_page_is_always_allowed(self, restricted_session):
		assert restricted_session.is_url_allowed('about:blank')
		await restricted_session.navigate('about:blank')

	async def test_redirect_to_disallowed_domain_is_left(self, restricted_session, fake_page):
		fake_page.redirects = {'https://example.com/login': 'https://evil.com/phish'}

		with pytest.raises(URLNotAllowedError):
			await restricted_session.navigate('https://example.com/login')

		assert fake_page.url == 'about:blank'

	async def test_navigation_invalidates_the_cache(self, browser_session):
		await browser_session.get_snapshot()

		await browser_session.navigate('https://example.com/next')

		assert browser_session.cached_snapshot is None

	async def test_navigate_in_new_tab(self, browser_session, fake_context):
		await browser_session.navigate('https://example.com/new', new_tab=True)

		current = await browser_session.get_current_page()
		assert current.url == 'https://example.com/new'
		assert len(fake_context.pages) == 2


class TestTabs:
	async def test_tabs_info_and_switching(self, browser_session, fake_context):
		fake_context.add_page(url='https://example.com/second', title='Second')

		tabs = await browser_session.get_tabs_info()
		assert [tab.page_id for tab in tabs] == [0, 1]

		page = await browser_session.switch_to_tab(1)
		assert page.url == 'https://example.com/second'
		assert await browser_session.get_current_page() is page

	async def test_switch_to_missing_tab_fails(self, browser_session):
		with pytest.raises(BrowserError):
			await browser_session.switch_to_tab(5)

	async def test_closing_current_tab_falls_back_to_the_last_open_one(self, browser_session, fake_context, fake_page):
		second = fake_context.add_page(url='https://example.com/second')

		url = await browser_session.close_tab(0)

		assert url == 'https://example.com/'
		assert fake_page.closed
		assert await browser_session.get_current_page() is second


class TestLifecycle:
	"""Ownership and artifacts"""

	def test_session_without_browser_objects_owns_them(self):
		assert BrowserSession().owns_browser_resources is True

	async def test_borrowed_objects_survive_stop(self, browser_session, fake_page, fake_context):
		assert browser_session.owns_browser_resources is False

		await browser_session.stop()

		assert not fake_context.closed
		assert not fake_page.closed
		assert browser_session.initialized is False

	async def test_tracing_is_saved_on_stop(self, tmp_path, fake_page, fake_context):
		profile = BrowserProfile(minimum_wait_page_load_time=0, traces_dir=tmp_path / 'traces')
		session = BrowserSession(browser_profile=profile, page=fake_page)

		await session.start()
		assert session.tracing_active
		assert fake_context.tracing.started

		await session.stop()
		assert not session.tracing_active
		assert fake_context.tracing.saved_to == str(tmp_path / 'traces' / f'{session.id}.zip')

	async def test_downloads_are_saved(self, browser_session, browser_profile):
		await browser_session._on_download(FakeDownload('report.csv', b'a,b\n1,2\n'))

		assert len(browser_session.downloaded_files) == 1
		saved = browser_session.downloaded_files[0]
		assert saved.endswith('report.csv')
		with open(saved, 'rb') as f:
			assert f.read() == b'a,b\n1,2\n'
