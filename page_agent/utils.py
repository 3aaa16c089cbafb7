import logging
import time
from collections.abc import Callable, Coroutine
from fnmatch import fnmatch
from functools import wraps
from typing import Any, ParamSpec, TypeVar
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

P = ParamSpec('P')
R = TypeVar('R')

NEW_TAB_URLS = (
	'about:blank',
	'chrome://new-tab-page/',
	'chrome://new-tab-page',
	'chrome://newtab/',
	'chrome://newtab',
)


def time_execution_sync(additional_text: str = '') -> Callable[[Callable[P, R]], Callable[P, R]]:
	def decorator(func: Callable[P, R]) -> Callable[P, R]:
		@wraps(func)
		def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
			start_time = time.time()
			result = func(*args, **kwargs)
			execution_time = time.time() - start_time
			# Only log if execution takes more than 0.25 seconds
			if execution_time > 0.25:
				self_has_logger = args and getattr(args[0], 'logger', None)
				if self_has_logger:
					log = getattr(args[0], 'logger')
				elif 'agent' in kwargs:
					log = getattr(kwargs['agent'], 'logger')
				elif 'browser_session' in kwargs:
					log = getattr(kwargs['browser_session'], 'logger')
				else:
					log = logger
				log.debug(f'⏳ {additional_text.strip("-")}() took {execution_time:.2f}s')
			return result

		return wrapper

	return decorator


def time_execution_async(
	additional_text: str = '',
) -> Callable[[Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]]:
	def decorator(func: Callable[P, Coroutine[Any, Any, R]]) -> Callable[P, Coroutine[Any, Any, R]]:
		@wraps(func)
		async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
			start_time = time.time()
			result = await func(*args, **kwargs)
			execution_time = time.time() - start_time
			if execution_time > 0.25:
				self_has_logger = args and getattr(args[0], 'logger', None)
				if self_has_logger:
					log = getattr(args[0], 'logger')
				elif 'agent' in kwargs:
					log = getattr(kwargs['agent'], 'logger')
				elif 'browser_session' in kwargs:
					log = getattr(kwargs['browser_session'], 'logger')
				else:
					log = logger
				log.debug(f'⏳ {additional_text.strip("-")}() took {execution_time:.2f}s')
			return result

		return wrapper

	return decorator


def is_new_tab_page(url: str) -> bool:
	"""Blank and new-tab placeholder pages, which settle instantly and are always allowed."""
	return url in NEW_TAB_URLS


def match_url_with_domain_pattern(url: str, domain_pattern: str, log_warnings: bool = False) -> bool:
	"""
	Check if a URL matches a domain pattern. SECURITY CRITICAL.

	Supports optional glob patterns and schemes:
	- *.example.com will match sub.example.com and example.com
	- http*://example.com will match http://example.com, https://example.com
	- chrome-extension://* will match chrome-extension://aaaaaaaaaaaa

	When no scheme is specified, https is used by default for security.
	For example, 'example.com' will match 'https://example.com' but not 'http://example.com'.

	Note: about:blank and the chrome new tab pages must be handled at the callsite, not inside this function.

	Args:
		url: The URL to check
		domain_pattern: Domain pattern to match against
		log_warnings: Whether to log warnings about unsafe patterns

	Returns:
		bool: True if the URL matches the pattern, False otherwise
	"""
	try:
		if is_new_tab_page(url):
			return False

		parsed_url = urlparse(url)

		# Extract only the hostname and scheme components
		scheme = parsed_url.scheme.lower() if parsed_url.scheme else ''
		domain = parsed_url.hostname.lower() if parsed_url.hostname else ''

		if not scheme or not domain:
			return False

		domain_pattern = domain_pattern.lower()

		if '://' in domain_pattern:
			pattern_scheme, pattern_domain = domain_pattern.split('://', 1)
		else:
			pattern_scheme = 'https'
			pattern_domain = domain_pattern

		# paths and ports are not part of the match, only the hostname
		pattern_domain = pattern_domain.split('/', 1)[0]
		if ':' in pattern_domain and not pattern_domain.startswith(':'):
			pattern_domain = pattern_domain.split(':', 1)[0]

		if not fnmatch(scheme, pattern_scheme):
			return False

		if pattern_domain == '*' or domain == pattern_domain:
			return True

		if '*' in pattern_domain:
			# *.*.domain and similar are never matched
			if pattern_domain.count('*.') > 1 or pattern_domain.count('.*') > 1:
				if log_warnings:
					logger.error(f'⛔️ Multiple wildcards in pattern=[{domain_pattern}] are not supported')
				return False

			if pattern_domain.endswith('.*'):
				if log_warnings:
					logger.error(f'⛔️ Wildcard TLDs like in pattern=[{domain_pattern}] are not supported for security')
				return False

			bare_domain = pattern_domain.replace('*.', '')
			if '*' in bare_domain:
				if log_warnings:
					logger.error(f'⛔️ Only *.domain style patterns are supported, ignoring pattern=[{domain_pattern}]')
				return False

			# *.example.com also matches the apex example.com
			if pattern_domain.startswith('*.'):
				parent_domain = pattern_domain[2:]
				if domain == parent_domain or fnmatch(domain, pattern_domain):
					return True

			return False

		return False
	except Exception as e:
		logger.error(f'⛔️ Error matching URL {url} with pattern {domain_pattern}: {type(e).__name__}: {e}')
		return False


def is_url_allowed(url: str, allowed_domains: list[str] | None, log_warnings: bool = False) -> bool:
	"""True when no allow-list is configured, the url is a new tab page, or any pattern matches."""
	if not allowed_domains:
		return True
	if is_new_tab_page(url):
		return True
	return any(match_url_with_domain_pattern(url, pattern, log_warnings) for pattern in allowed_domains)


def _log_pretty_url(s: str, max_len: int | None = 22) -> str:
	"""Truncate/pretty-print a URL with a maximum length, removing the protocol and www. prefix"""
	s = s.replace('https://', '').replace('http://', '').replace('www.', '')
	if max_len is not None and len(s) > max_len:
		return s[:max_len] + '…'
	return s
