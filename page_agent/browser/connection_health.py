"""Page health checks and page replacement for browser sessions."""

import asyncio
from typing import TYPE_CHECKING

from page_agent.browser.views import BrowserClosedError
from page_agent.dom.probe import HEALTH_CHECK_JS
from page_agent.utils import is_new_tab_page

if TYPE_CHECKING:
	from playwright.async_api import Page

	from page_agent.browser.session import BrowserSession


class ConnectionHealthMonitor:
	"""Detects dead or unresponsive pages and swaps in a fresh page from the same context."""

	def __init__(self, browser_session: 'BrowserSession'):
		self.browser_session = browser_session
		self.consecutive_failures = 0
		self.replacements = 0

	@property
	def logger(self):
		return self.browser_session.logger

	async def check_page_health(self, page: 'Page | None') -> bool:
		"""Check if the page is alive by evaluating a trivial expression.

		Returns:
			True if the page answered in time, False if closed, hung or broken
		"""
		if page is None:
			return False

		try:
			if page.is_closed():
				self.logger.debug('🔍 Page is closed')
				return False

			result = await asyncio.wait_for(
				page.evaluate(HEALTH_CHECK_JS),
				timeout=self.browser_session.browser_profile.health_check_timeout,
			)
			if result == 2:
				self.consecutive_failures = 0
				return True

			self.consecutive_failures += 1
			self.logger.debug(f'❌ Page health check failed - unexpected result {result!r}')
			return False

		except asyncio.TimeoutError:
			self.consecutive_failures += 1
			self.logger.warning(f'⏱️ Page health check timed out (failures: {self.consecutive_failures})')
			return False
		except Exception as e:
			self.consecutive_failures += 1
			self.logger.warning(f'❌ Page health check failed: {type(e).__name__}: {e} (failures: {self.consecutive_failures})')
			return False

	async def replace_page(self, dead_page: 'Page | None') -> 'Page':
		"""Open a fresh page in the same context and try to restore the last url on it.

		Returns:
			The new page, which the session substitutes for the dead one
		"""
		browser_context = self.browser_session.browser_context
		if browser_context is None:
			raise BrowserClosedError('Cannot replace page: browser context is not available')

		last_url = None
		if dead_page is not None:
			try:
				last_url = dead_page.url
			except Exception:
				last_url = None

		self.logger.warning('🔧 Page is unresponsive, opening a fresh page in the same context...')
		new_page = await browser_context.new_page()
		self.replacements += 1

		if dead_page is not None:
			try:
				if not dead_page.is_closed():
					await asyncio.wait_for(dead_page.close(), timeout=2.0)
			except Exception as e:
				self.logger.debug(f'Failed to close the unresponsive page: {type(e).__name__}: {e}')

		if last_url and not is_new_tab_page(last_url) and self.browser_session.is_url_allowed(last_url):
			try:
				await new_page.goto(
					last_url,
					wait_until='domcontentloaded',
					timeout=self.browser_session.browser_profile.navigation_timeout * 1000,
				)
			except Exception as e:
				self.logger.warning(f'⚠️ Could not restore {last_url} on the replacement page: {type(e).__name__}: {e}')

		self.consecutive_failures = 0
		self.logger.info('✅ Page replaced')
		return new_page
