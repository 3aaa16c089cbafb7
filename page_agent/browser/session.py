import asyncio
import base64
import logging
import time
from functools import wraps
from pathlib import Path
from typing import TYPE_CHECKING, Any

from playwright.async_api import async_playwright
from uuid_extensions import uuid7str

from page_agent.browser.connection_health import ConnectionHealthMonitor
from page_agent.browser.profile import BrowserProfile
from page_agent.browser.views import (
	BrowserClosedError,
	BrowserError,
	DomSnapshot,
	ElementNotFoundError,
	PageInfo,
	TabInfo,
	URLNotAllowedError,
)
from page_agent.dom.probe import DROPDOWN_OPTIONS_JS, PAGE_INFO_JS, SCROLL_BY_JS, SCROLL_TO_TEXT_JS
from page_agent.dom.serializer.serializer import DOMTreeSerializer
from page_agent.dom.service import DomBuildOptions, DomService
from page_agent.dom.views import DOMElementNode, ElementDescriptor
from page_agent.utils import _log_pretty_url, is_new_tab_page, is_url_allowed, time_execution_async

if TYPE_CHECKING:
	from playwright.async_api import Browser, BrowserContext, Locator, Page, Playwright

_GLOB_WARNING_SHOWN = False  # used inside _is_url_allowed to avoid spamming the logs with the same warning multiple times

# Resource types whose traffic delays the settle wait
RELEVANT_RESOURCE_TYPES = {
	'document',
	'stylesheet',
	'image',
	'font',
	'script',
	'iframe',
}

IGNORED_URL_PATTERNS = {
	# Analytics and tracking
	'analytics',
	'tracking',
	'telemetry',
	'beacon',
	'metrics',
	# Ad-related
	'doubleclick',
	'adsystem',
	'adserver',
	'advertising',
	# Live chat and support
	'livechat',
	'zendesk',
	'intercom',
	'hotjar',
	# Background sync/heartbeat
	'heartbeat',
	'ping',
	'alive',
	# WebRTC and streaming
	'webrtc',
	'rtmp://',
	'wss://',
}


def require_healthy_page(func):
	"""Decorator for BrowserSession methods that touch the live page.

	Before the call the current page is health-checked and replaced by a fresh page from the same
	context if it is closed or unresponsive. If the call itself fails and the page turns out to be
	dead, the page is replaced and the call is retried exactly once. `self.page_replaced` tells the
	caller whether a substitution happened during the last wrapped call.
	"""
	assert asyncio.iscoroutinefunction(func), '@require_healthy_page only supports async methods'

	@wraps(func)
	async def wrapper(self: 'BrowserSession', *args, **kwargs):
		if not self.initialized:
			await self.start()

		if self._in_recovery:
			return await func(self, *args, **kwargs)

		replaced = await self.ensure_healthy_page()
		try:
			result = await func(self, *args, **kwargs)
		except (URLNotAllowedError, ElementNotFoundError, BrowserClosedError):
			self.page_replaced = replaced
			raise
		except Exception as e:
			if not self.is_connected():
				raise BrowserClosedError(f'Browser closed during {func.__name__}(): {type(e).__name__}: {e}') from e
			if await self.health_monitor.check_page_health(self.agent_current_page):
				self.page_replaced = replaced
				raise
			self.logger.warning(f'🔄 {func.__name__}() failed on a dead page ({type(e).__name__}), retrying once on a fresh page')
			await self._replace_current_page()
			replaced = True
			self.page_replaced = replaced
			return await func(self, *args, **kwargs)

		self.page_replaced = replaced
		return result

	return wrapper


class BrowserSession:
	"""Owns the current page, the cached snapshot and the page health policy of one browsing session."""

	def __init__(
		self,
		browser_profile: BrowserProfile | None = None,
		*,
		playwright: 'Playwright | None' = None,
		browser: 'Browser | None' = None,
		browser_context: 'BrowserContext | None' = None,
		page: 'Page | None' = None,
		cdp_url: str | None = None,
		id: str | None = None,
		**profile_overrides: Any,
	):
		self.id = id or uuid7str()
		profile = browser_profile or BrowserProfile()
		if profile_overrides:
			profile = BrowserProfile(**{**profile.model_dump(), **profile_overrides})
		self.browser_profile = profile

		if page is not None and browser_context is None:
			browser_context = page.context

		self.playwright = playwright
		self.browser = browser
		self.browser_context = browser_context
		self.agent_current_page = page
		self.cdp_url = cdp_url

		# anything handed in by the caller is borrowed and must survive stop()/kill()
		self.owns_browser_resources = not any((browser, browser_context, page, cdp_url))

		self.initialized = False
		self.page_replaced = False
		self.downloaded_files: list[str] = []
		self.tracing_active = False
		self.health_monitor = ConnectionHealthMonitor(self)

		# attributes shown in the element rendering, None means the serializer defaults
		self.include_attributes: list[str] | None = None
		self._cached_snapshot: DomSnapshot | None = None
		self._advisories: list[str] = []
		self._in_recovery = False
		self._context_closed = False
		self._logger: logging.Logger | None = None

	@property
	def logger(self) -> logging.Logger:
		if self._logger is None:
			self._logger = logging.getLogger(f'page_agent.BrowserSession🆂 {self.id[-4:]}')
		return self._logger

	def __repr__(self) -> str:
		owned = 'owned' if self.owns_browser_resources else 'borrowed'
		return f'BrowserSession🆂 {self.id[-4:]} ({owned})'

	async def __aenter__(self) -> 'BrowserSession':
		await self.start()
		return self

	async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
		await self.stop()

	# --- lifecycle ---

	async def start(self) -> 'BrowserSession':
		if self.initialized:
			return self

		if self.browser_context is None:
			if self.playwright is None:
				self.playwright = await async_playwright().start()

			if self.browser is None:
				if self.cdp_url:
					self.logger.info(f'🌎 Connecting to existing chromium over CDP: {self.cdp_url}')
					self.browser = await self.playwright.chromium.connect_over_cdp(self.cdp_url)
				else:
					self.logger.info(f'🌎 Launching chromium (headless={self.browser_profile.headless})')
					self.browser = await self.playwright.chromium.launch(**self.browser_profile.kwargs_for_launch())

			if self.browser.contexts and self.cdp_url:
				self.browser_context = self.browser.contexts[0]
			else:
				self.browser_context = await self.browser.new_context(**self.browser_profile.kwargs_for_new_context())

		self.browser_context.on('page', self._on_new_page)
		self.browser_context.on('close', self._on_context_closed)
		for existing_page in self.browser_context.pages:
			self._attach_page_listeners(existing_page)

		if self.agent_current_page is None or self.agent_current_page.is_closed():
			open_pages = [p for p in self.browser_context.pages if not p.is_closed()]
			self.agent_current_page = open_pages[0] if open_pages else await self.browser_context.new_page()

		if self.browser_profile.traces_dir:
			await self.browser_context.tracing.start(screenshots=True, snapshots=True, sources=False)
			self.tracing_active = True

		self.initialized = True
		return self

	async def stop(self) -> None:
		"""Shut down, unless keep_alive is set or the browser objects were borrowed from the caller."""
		if self.browser_profile.keep_alive:
			self.logger.info('🕊️ BrowserSession.stop() called but keep_alive=True, leaving the browser running')
			return
		await self._close(force=False)

	async def kill(self) -> None:
		"""Shut down regardless of keep_alive. Borrowed browser objects are still left alone."""
		await self._close(force=True)

	async def _close(self, force: bool) -> None:
		await self._stop_tracing()

		if not self.owns_browser_resources:
			self.logger.debug('🔗 Browser objects were passed in by the caller, not closing them')
			self._reset_state()
			return

		if self.browser_context is not None:
			try:
				await self.browser_context.close()
			except Exception as e:
				self.logger.debug(f'Failed to close browser context: {type(e).__name__}: {e}')
		if self.browser is not None:
			try:
				await self.browser.close()
			except Exception as e:
				self.logger.debug(f'Failed to close browser: {type(e).__name__}: {e}')
		if self.playwright is not None:
			try:
				await self.playwright.stop()
			except Exception as e:
				self.logger.debug(f'Failed to stop playwright: {type(e).__name__}: {e}')

		self.logger.info(f'🛑 Browser session closed{" (killed)" if force else ""}')
		self.browser_context = None
		self.browser = None
		self.playwright = None
		self._reset_state()

	def _reset_state(self) -> None:
		self.initialized = False
		self.agent_current_page = None if self.owns_browser_resources else self.agent_current_page
		self._cached_snapshot = None

	async def _stop_tracing(self) -> None:
		if not self.tracing_active or self.browser_context is None:
			return
		traces_dir = Path(str(self.browser_profile.traces_dir))
		trace_path = traces_dir / f'{self.id}.zip'
		try:
			traces_dir.mkdir(parents=True, exist_ok=True)
			await self.browser_context.tracing.stop(path=str(trace_path))
			self.logger.info(f'🎥 Saved trace to {trace_path}')
		except Exception as e:
			self.logger.warning(f'⚠️ Failed to save trace: {type(e).__name__}: {e}')
		finally:
			self.tracing_active = False

	def is_connected(self) -> bool:
		if self.browser_context is None or self._context_closed:
			return False
		if self.browser is not None and not self.browser.is_connected():
			return False
		return True

	def _on_context_closed(self, *args: Any) -> None:
		self._context_closed = True
		self.logger.warning('⚠️ Browser context was closed')

	def _on_new_page(self, page: 'Page') -> None:
		self._attach_page_listeners(page)

	def _attach_page_listeners(self, page: 'Page') -> None:
		page.on('download', self._on_download)

	async def _on_download(self, download: Any) -> None:
		if not self.browser_profile.downloads_path:
			return
		downloads_dir = Path(str(self.browser_profile.downloads_path))
		try:
			downloads_dir.mkdir(parents=True, exist_ok=True)
			target = downloads_dir / download.suggested_filename
			await download.save_as(str(target))
			self.downloaded_files.append(str(target))
			self.logger.info(f'⬇️ Downloaded {target.name} to {downloads_dir}')
		except Exception as e:
			self.logger.warning(f'⚠️ Failed to save download: {type(e).__name__}: {e}')

	# --- health ---

	async def ensure_healthy_page(self) -> bool:
		"""Make sure the current page is usable.

		Returns:
			True if the page object was replaced, callers holding a page reference must refresh it
		"""
		if not self.is_connected():
			raise BrowserClosedError('Browser is closed or disconnected')

		page = self.agent_current_page
		if page is None or page.is_closed():
			assert self.browser_context is not None
			open_pages = [p for p in self.browser_context.pages if not p.is_closed()]
			if open_pages:
				self.agent_current_page = open_pages[-1]
				self.invalidate()
				return True
			await self._replace_current_page()
			return True

		# blank pages are always responsive
		if is_new_tab_page(page.url):
			return False

		if await self.health_monitor.check_page_health(page):
			return False

		await self._replace_current_page()
		return True

	async def _replace_current_page(self) -> None:
		self._in_recovery = True
		try:
			self.agent_current_page = await self.health_monitor.replace_page(self.agent_current_page)
		except BrowserClosedError:
			raise
		except Exception as e:
			if not self.is_connected():
				raise BrowserClosedError(f'Browser closed while replacing page: {type(e).__name__}: {e}') from e
			raise
		finally:
			self._in_recovery = False
		self.invalidate()

	async def get_current_page(self) -> 'Page':
		if not self.initialized:
			await self.start()
		assert self.agent_current_page is not None, 'BrowserSession has no current page'
		return self.agent_current_page

	# --- snapshot cache ---

	def invalidate(self) -> None:
		"""Drop the cached snapshot. Safe to call any number of times."""
		self._cached_snapshot = None

	@property
	def cached_snapshot(self) -> DomSnapshot | None:
		return self._cached_snapshot

	@require_healthy_page
	@time_execution_async('--get_snapshot')
	async def get_snapshot(self, force_refresh: bool = False, include_screenshot: bool = False) -> DomSnapshot:
		"""Return the cached snapshot, rebuilding it when the cache is empty or force_refresh is set."""
		if self._cached_snapshot is None or force_refresh:
			self._cached_snapshot = await self._build_snapshot(include_screenshot)
		elif include_screenshot and self._cached_snapshot.screenshot is None:
			self._cached_snapshot.screenshot = await self._take_screenshot()
		return self._cached_snapshot

	def _dom_build_options(self, highlight: bool) -> DomBuildOptions:
		return DomBuildOptions(
			highlight_elements=highlight,
			viewport_expansion=self.browser_profile.viewport_expansion,
			include_hidden=self.browser_profile.include_hidden_elements,
			max_text_length=self.browser_profile.max_text_length,
			timeout=self.browser_profile.dom_build_timeout,
		)

	async def _build_snapshot(self, include_screenshot: bool) -> DomSnapshot:
		page = await self.get_current_page()
		await self._wait_for_page_and_frames_load()

		dom_state = await DomService(page, self.logger).build(self._dom_build_options(self.browser_profile.highlight_elements))
		elements_text = DOMTreeSerializer(
			dom_state.element_tree,
			include_attributes=self.include_attributes,
			max_text_length=self.browser_profile.max_text_length,
		).serialize()

		browser_errors = list(self._advisories)
		self._advisories.clear()
		if dom_state.error:
			browser_errors.append(f'The page could not be analysed ({dom_state.error}), only navigation is reliable right now.')

		page_info, has_pdf_embed = await self._get_page_info(page)
		screenshot = await self._take_screenshot() if include_screenshot else None

		return DomSnapshot(
			element_tree=dom_state.element_tree,
			selector_map=dom_state.selector_map,
			error=dom_state.error,
			url=page.url,
			title=await self._get_page_title(page),
			tabs=await self.get_tabs_info(),
			page_info=page_info,
			screenshot=screenshot,
			is_pdf_viewer=page.url.lower().split('?')[0].endswith('.pdf') or has_pdf_embed,
			browser_errors=browser_errors,
			timestamp=time.time(),
			elements_text=elements_text,
			signature=DOMTreeSerializer.compute_signature(elements_text),
		)

	async def remove_highlights(self) -> None:
		"""Clear the index overlays the last snapshot drew on the page"""
		if not self.browser_profile.highlight_elements:
			return
		page = await self.get_current_page()
		await DomService(page, self.logger).remove_highlights()

	@require_healthy_page
	async def change_signature(self) -> str:
		"""Hash of a fresh, unhighlighted rendering. Does not touch the cache."""
		page = await self.get_current_page()
		dom_state = await DomService(page, self.logger).build(self._dom_build_options(highlight=False))
		elements_text = DOMTreeSerializer(
			dom_state.element_tree,
			include_attributes=self.include_attributes,
			max_text_length=self.browser_profile.max_text_length,
		).serialize()
		return DOMTreeSerializer.compute_signature(elements_text)

	def get_element_by_index(self, index: int) -> DOMElementNode:
		if self._cached_snapshot is None or index not in self._cached_snapshot.selector_map:
			raise ElementNotFoundError(
				f'Element with index {index} does not exist in the current page state - refresh the state and retry',
				details={'index': index},
			)
		return self._cached_snapshot.selector_map[index]

	def resolve(self, index: int) -> ElementDescriptor:
		return self.get_element_by_index(index).descriptor

	async def _get_page_info(self, page: 'Page') -> tuple[PageInfo | None, bool]:
		try:
			metrics = await asyncio.wait_for(page.evaluate(PAGE_INFO_JS), timeout=2.0)
			return PageInfo.from_metrics(metrics), bool(metrics.get('has_pdf_embed'))
		except Exception as e:
			self.logger.debug(f'Failed to read page metrics: {type(e).__name__}: {e}')
			return None, False

	async def _get_page_title(self, page: 'Page') -> str:
		try:
			return await asyncio.wait_for(page.title(), timeout=2.0)
		except Exception:
			return ''

	# --- settle wait ---

	async def _wait_for_stable_network(self, page: 'Page') -> None:
		pending_requests = set()
		loop = asyncio.get_event_loop()
		last_activity = loop.time()

		def on_request(request: Any) -> None:
			nonlocal last_activity
			if request.resource_type not in RELEVANT_RESOURCE_TYPES:
				return
			url = request.url.lower()
			if url.startswith(('data:', 'blob:')) or any(pattern in url for pattern in IGNORED_URL_PATTERNS):
				return
			pending_requests.add(request)
			last_activity = loop.time()

		def on_response(response: Any) -> None:
			nonlocal last_activity
			request = response.request
			if request not in pending_requests:
				return
			pending_requests.discard(request)
			last_activity = loop.time()

		def on_request_done(request: Any) -> None:
			pending_requests.discard(request)

		page.on('request', on_request)
		page.on('response', on_response)
		page.on('requestfailed', on_request_done)

		start_time = loop.time()
		now = start_time
		try:
			while True:
				await asyncio.sleep(0.1)
				now = loop.time()
				if len(pending_requests) == 0 and (now - last_activity) >= self.browser_profile.wait_for_network_idle_page_load_time:
					break
				if now - start_time > self.browser_profile.maximum_wait_page_load_time:
					advisory = (
						f'Page loading was aborted after {self.browser_profile.maximum_wait_page_load_time}s with '
						f'{len(pending_requests)} pending network requests. You may want to use the wait action to '
						'allow more time for the page to fully load.'
					)
					self.logger.debug(f'{self} Network timeout with pending requests: {[r.url for r in pending_requests]}')
					self._advisories.append(advisory)
					break
		finally:
			page.remove_listener('request', on_request)
			page.remove_listener('response', on_response)
			page.remove_listener('requestfailed', on_request_done)

		if now - start_time > 1:
			self.logger.debug(f'💤 Page network traffic calmed down after {now - start_time:.2f} seconds')

	async def _wait_for_page_and_frames_load(self, timeout_overwrite: float | None = None) -> None:
		"""
		Ensures page is fully loaded before continuing.
		Waits for either network to be idle or minimum WAIT_TIME, whichever is longer.
		"""
		page = await self.get_current_page()
		if is_new_tab_page(page.url):
			return

		start_time = time.time()
		try:
			await self._wait_for_stable_network(page)
		except Exception as e:
			self.logger.warning(f'⚠️ Page load for {_log_pretty_url(page.url)} failed due to {type(e).__name__}, continuing anyway...')

		elapsed = time.time() - start_time
		remaining = max((timeout_overwrite or self.browser_profile.minimum_wait_page_load_time) - elapsed, 0)
		self.logger.debug(f'➡️ Page {_log_pretty_url(page.url, 40)} settled in {elapsed:.2f}s')
		if remaining > 0:
			await asyncio.sleep(remaining)

	def pop_advisories(self) -> list[str]:
		advisories, self._advisories = self._advisories, []
		return advisories

	# --- navigation ---

	def _log_glob_warning(self, domain: str, glob: str) -> None:
		global _GLOB_WARNING_SHOWN
		if not _GLOB_WARNING_SHOWN:
			self.logger.warning(
				f'⚠️ Allowing agent to visit {domain} based on allowed_domains=[{glob}, ...]. Set allowed_domains=[{domain}, ...] explicitly to avoid matching too many domains!'
			)
			_GLOB_WARNING_SHOWN = True

	def is_url_allowed(self, url: str) -> bool:
		allowed_domains = self.browser_profile.allowed_domains
		allowed = is_url_allowed(url, allowed_domains, log_warnings=True)
		if allowed and allowed_domains:
			for pattern in allowed_domains:
				if '*' in pattern and not is_new_tab_page(url):
					self._log_glob_warning(_log_pretty_url(url, None), pattern)
					break
		return allowed

	async def _check_and_handle_navigation(self, page: 'Page') -> None:
		"""Leave pages that redirected to a disallowed url"""
		if not self.is_url_allowed(page.url):
			self.logger.warning(f'⛔️ Navigation to non-allowed URL detected: {page.url}')
			try:
				await page.goto('about:blank')
			except Exception:
				pass
			raise URLNotAllowedError(f'Navigation to non-allowed URL: {page.url}', details={'url': page.url})

	@require_healthy_page
	async def navigate(self, url: str, new_tab: bool = False) -> None:
		if not self.is_url_allowed(url):
			raise URLNotAllowedError(f'Navigation to non-allowed URL: {url}', details={'url': url})

		if new_tab:
			assert self.browser_context is not None
			self.agent_current_page = await self.browser_context.new_page()

		page = await self.get_current_page()
		self.invalidate()
		try:
			await page.goto(url, wait_until='domcontentloaded', timeout=self.browser_profile.navigation_timeout * 1000)
		finally:
			self.invalidate()

		await self._check_and_handle_navigation(page)
		await self._wait_for_page_and_frames_load()

	@require_healthy_page
	async def go_back(self) -> None:
		page = await self.get_current_page()
		try:
			await page.go_back(timeout=self.browser_profile.navigation_timeout * 1000, wait_until='domcontentloaded')
		finally:
			self.invalidate()
		await self._wait_for_page_and_frames_load()

	@require_healthy_page
	async def reload(self) -> None:
		page = await self.get_current_page()
		try:
			await page.reload(timeout=self.browser_profile.navigation_timeout * 1000, wait_until='domcontentloaded')
		finally:
			self.invalidate()
		await self._wait_for_page_and_frames_load()

	# --- tabs ---

	async def get_tabs_info(self) -> list[TabInfo]:
		if self.browser_context is None:
			return []
		tabs = []
		for page_id, page in enumerate(self.browser_context.pages):
			if page.is_closed():
				continue
			tabs.append(TabInfo(page_id=page_id, url=page.url, title=await self._get_page_title(page)))
		return tabs

	def _get_page_by_id(self, page_id: int) -> 'Page':
		assert self.browser_context is not None
		pages = self.browser_context.pages
		try:
			return pages[page_id]
		except IndexError:
			raise BrowserError(f'No tab found with page_id: {page_id}', details={'page_id': page_id}) from None

	async def switch_to_tab(self, page_id: int) -> 'Page':
		page = self._get_page_by_id(page_id)
		if not self.is_url_allowed(page.url):
			raise URLNotAllowedError(f'Cannot switch to tab with non-allowed URL: {page.url}', details={'url': page.url})
		self.agent_current_page = page
		self.invalidate()
		try:
			await page.bring_to_front()
		except Exception as e:
			self.logger.debug(f'bring_to_front failed: {type(e).__name__}: {e}')
		await self._wait_for_page_and_frames_load()
		return page

	async def create_new_tab(self, url: str | None = None) -> 'Page':
		if url:
			await self.navigate(url, new_tab=True)
		else:
			assert self.browser_context is not None
			self.agent_current_page = await self.browser_context.new_page()
			self.invalidate()
		return await self.get_current_page()

	async def close_tab(self, page_id: int) -> str:
		page = self._get_page_by_id(page_id)
		url = page.url
		await page.close()
		self.invalidate()
		if page is self.agent_current_page:
			assert self.browser_context is not None
			open_pages = [p for p in self.browser_context.pages if not p.is_closed()]
			self.agent_current_page = open_pages[-1] if open_pages else await self.browser_context.new_page()
		return url

	# --- element interaction ---

	async def _locate_element(self, page: 'Page', descriptor: ElementDescriptor) -> 'Locator':
		"""Relocate an element: structural path, then css selector, then tag name."""
		for selector in descriptor.locator_candidates():
			try:
				locator = page.locator(selector).first
				if await locator.count() > 0:
					return locator
			except Exception as e:
				self.logger.debug(f'Locator {selector} failed: {type(e).__name__}: {e}')
		raise ElementNotFoundError(
			f'Element with index {descriptor.highlight_index} could not be located on the page',
			details={'index': descriptor.highlight_index, 'xpath': descriptor.xpath},
		)

	async def _click_at_center(self, page: 'Page', locator: 'Locator') -> None:
		box = await locator.bounding_box()
		if not box:
			raise BrowserError('Element has no bounding box, cannot click by coordinates')
		await page.mouse.click(box['x'] + box['width'] / 2, box['y'] + box['height'] / 2)

	async def _click_element(self, page: 'Page', descriptor: ElementDescriptor) -> None:
		locator = await self._locate_element(page, descriptor)
		timeout_ms = self.browser_profile.action_timeout * 1000

		attempts = [
			('click', lambda: locator.click(timeout=timeout_ms)),
			('forced click', lambda: locator.click(timeout=timeout_ms, force=True)),
			('script click', lambda: locator.evaluate('(el) => el.click()')),
			('coordinate click', lambda: self._click_at_center(page, locator)),
		]

		last_error: Exception | None = None
		for name, attempt in attempts:
			try:
				await attempt()
				if last_error is not None:
					self.logger.debug(f'🖱️ {name} succeeded on element {descriptor.highlight_index}')
				return
			except Exception as e:
				last_error = e
				self.logger.debug(f'🖱️ {name} on element {descriptor.highlight_index} failed: {type(e).__name__}: {e}')

		assert last_error is not None
		raise last_error

	@require_healthy_page
	async def click_by_index(self, index: int) -> None:
		descriptor = self.resolve(index)
		page = await self.get_current_page()
		assert self.browser_context is not None
		pages_before = len(self.browser_context.pages)
		try:
			await self._click_element(page, descriptor)
		finally:
			self.invalidate()

		# a page opened by the click becomes the current page
		if len(self.browser_context.pages) > pages_before:
			new_page = self.browser_context.pages[-1]
			self.logger.info(f'🔗 Click opened a new tab: {_log_pretty_url(new_page.url)}')
			self.agent_current_page = new_page
			try:
				await new_page.wait_for_load_state(timeout=self.browser_profile.navigation_timeout * 1000)
			except Exception as e:
				self.logger.debug(f'New tab did not finish loading: {type(e).__name__}: {e}')

	@require_healthy_page
	async def type_by_index(self, index: int, text: str) -> None:
		descriptor = self.resolve(index)
		page = await self.get_current_page()
		try:
			locator = await self._locate_element(page, descriptor)
			try:
				await locator.fill('', timeout=self.browser_profile.action_timeout * 1000)
			except Exception as e:
				self.logger.debug(f'Element {index} is not clearable, typing without clearing: {type(e).__name__}')
			await locator.press_sequentially(
				text,
				delay=self.browser_profile.typing_delay_ms,
				timeout=self.browser_profile.action_timeout * 1000 + len(text) * self.browser_profile.typing_delay_ms,
			)
		finally:
			self.invalidate()

	@require_healthy_page
	async def send_keys(self, keys: str) -> None:
		page = await self.get_current_page()
		try:
			await page.keyboard.press(keys)
		finally:
			self.invalidate()

	@require_healthy_page
	async def get_dropdown_options(self, index: int) -> list[dict[str, Any]]:
		descriptor = self.resolve(index)
		page = await self.get_current_page()
		locator = await self._locate_element(page, descriptor)
		options = await locator.evaluate(DROPDOWN_OPTIONS_JS)
		if options is None:
			raise BrowserError(f'Element {index} is a <{descriptor.tag_name}>, not a dropdown', details={'index': index})
		return options

	@require_healthy_page
	async def select_dropdown_option(self, index: int, text: str) -> list[str]:
		descriptor = self.resolve(index)
		page = await self.get_current_page()
		try:
			locator = await self._locate_element(page, descriptor)
			return await locator.select_option(label=text, timeout=self.browser_profile.action_timeout * 1000)
		finally:
			self.invalidate()

	# --- viewport ---

	@require_healthy_page
	async def scroll(self, pixels: int) -> None:
		page = await self.get_current_page()
		await page.evaluate(SCROLL_BY_JS, pixels)
		self.invalidate()

	@require_healthy_page
	async def scroll_to_text(self, text: str) -> bool:
		page = await self.get_current_page()
		found = bool(await page.evaluate(SCROLL_TO_TEXT_JS, text))
		if found:
			self.invalidate()
		return found

	async def _take_screenshot(self, full_page: bool = False) -> str | None:
		page = await self.get_current_page()
		try:
			screenshot = await page.screenshot(full_page=full_page, animations='disabled', timeout=10_000)
			return base64.b64encode(screenshot).decode('utf-8')
		except Exception as e:
			self.logger.warning(f'⚠️ Failed to take screenshot: {type(e).__name__}: {e}')
			return None

	@require_healthy_page
	async def take_screenshot(self, full_page: bool = False) -> str | None:
		"""Base64 png of the current page, None if capture failed"""
		return await self._take_screenshot(full_page)

	@require_healthy_page
	async def get_page_html(self) -> str:
		page = await self.get_current_page()
		return await page.content()
