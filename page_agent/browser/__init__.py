from page_agent.browser.profile import BrowserProfile, ViewportSize
from page_agent.browser.session import BrowserSession
from page_agent.browser.views import (
	BrowserClosedError,
	BrowserError,
	BrowserStateHistory,
	DomSnapshot,
	ElementNotFoundError,
	PageInfo,
	TabInfo,
	URLNotAllowedError,
)

__all__ = [
	'BrowserSession',
	'BrowserProfile',
	'ViewportSize',
	'DomSnapshot',
	'BrowserStateHistory',
	'PageInfo',
	'TabInfo',
	'BrowserError',
	'URLNotAllowedError',
	'ElementNotFoundError',
	'BrowserClosedError',
]
