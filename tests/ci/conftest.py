"""
Shared fixtures for the ci tests.

The browser side is faked at the playwright API boundary: FakeContext / FakePage / FakeLocator
implement exactly the calls BrowserSession and DomService make, and FakePage.evaluate answers the
in-page scripts from page_agent.dom.probe with scripted data. create_mock_llm returns a scripted
decision source in the same spirit.
"""

import asyncio
import copy
import json
from collections import defaultdict
from typing import Any

import pytest

from page_agent.browser.profile import BrowserProfile
from page_agent.browser.session import BrowserSession
from page_agent.dom.probe import (
	DOM_TREE_PROBE_JS,
	DROPDOWN_OPTIONS_JS,
	HEALTH_CHECK_JS,
	PAGE_INFO_JS,
	REMOVE_HIGHLIGHTS_JS,
	SCROLL_BY_JS,
	SCROLL_TO_TEXT_JS,
)
from page_agent.llm.views import ChatInvokeCompletion

# --- probe results ---


def element(
	tag: str,
	text: str = '',
	index: int | None = None,
	visible: bool = True,
	interactive: bool = True,
	top: bool = True,
	**attributes: str,
) -> dict[str, Any]:
	"""One element under <body>, in the shape the probe reports it"""
	return {
		'tag': tag,
		'text': text,
		'index': index,
		'visible': visible,
		'interactive': interactive,
		'top': top,
		'attributes': {key.replace('_', '-'): value for key, value in attributes.items()},
	}


def text_block(text: str, visible: bool = True) -> dict[str, Any]:
	"""Plain, non-interactive text inside a <p>"""
	return element('p', text=text, visible=visible, interactive=False)


def probe_result(*children: dict[str, Any]) -> dict[str, Any]:
	"""Flat id -> node map with <body> at id 0, like DOM_TREE_PROBE_JS returns"""
	node_map: dict[str, Any] = {}
	body_children: list[str] = []
	node_map['0'] = {
		'tagName': 'body',
		'xpath': 'html/body',
		'attributes': {},
		'isVisible': True,
		'isInteractive': False,
		'isTopElement': True,
		'isInViewport': True,
		'children': body_children,
	}

	tag_counts: dict[str, int] = defaultdict(int)
	next_id = 1
	for child in children:
		tag_counts[child['tag']] += 1
		element_id = str(next_id)
		next_id += 1
		node: dict[str, Any] = {
			'tagName': child['tag'],
			'xpath': f'html/body/{child["tag"]}[{tag_counts[child["tag"]]}]',
			'attributes': child['attributes'],
			'isVisible': child['visible'],
			'isInteractive': child['interactive'],
			'isTopElement': child['top'],
			'isInViewport': child['visible'],
			'rect': {'x': 10, 'y': 20 * next_id, 'width': 100, 'height': 20},
			'children': [],
		}
		if child['index'] is not None:
			node['highlightIndex'] = child['index']
		node_map[element_id] = node
		body_children.append(element_id)

		if child['text']:
			text_id = str(next_id)
			next_id += 1
			node_map[text_id] = {'type': 'TEXT_NODE', 'text': child['text'], 'isVisible': child['visible']}
			node['children'].append(text_id)

	return {'rootId': '0', 'map': node_map}


DEFAULT_METRICS = {
	'viewport_width': 1280,
	'viewport_height': 1000,
	'page_width': 1280,
	'page_height': 3000,
	'scroll_x': 0,
	'scroll_y': 0,
	'has_pdf_embed': False,
}


def default_probe() -> dict[str, Any]:
	return probe_result(
		element('button', 'Submit', index=0, type='submit'),
		element('input', index=1, type='text', name='q', placeholder='Search'),
		text_block('Welcome to the test page'),
	)


# --- playwright fakes ---


class FakeRequest:
	def __init__(self, url: str, resource_type: str = 'script'):
		self.url = url
		self.resource_type = resource_type


class FakeDownload:
	def __init__(self, suggested_filename: str, content: bytes = b'downloaded'):
		self.suggested_filename = suggested_filename
		self.content = content

	async def save_as(self, path: str) -> None:
		with open(path, 'wb') as f:
			f.write(self.content)


class FakeKeyboard:
	def __init__(self, page: 'FakePage'):
		self.page = page

	async def press(self, keys: str) -> None:
		self.page.actions.append(('press', keys))


class FakeMouse:
	def __init__(self, page: 'FakePage'):
		self.page = page

	async def click(self, x: float, y: float) -> None:
		self.page.actions.append(('mouse', x, y))
		self.page.fire_click('mouse')


class FakeLocator:
	def __init__(self, page: 'FakePage', selector: str):
		self.page = page
		self.selector = selector

	@property
	def first(self) -> 'FakeLocator':
		return self

	async def count(self) -> int:
		return 0 if self.selector in self.page.missing_selectors else 1

	async def click(self, timeout: float | None = None, force: bool = False) -> None:
		kind = 'force_click' if force else 'click'
		if kind in self.page.failing_clicks:
			raise TimeoutError(f'{kind} on {self.selector} timed out')
		self.page.actions.append((kind, self.selector))
		self.page.fire_click(self.selector)

	async def evaluate(self, expression: str, arg: Any = None) -> Any:
		if expression == DROPDOWN_OPTIONS_JS:
			return self.page.dropdown_options
		if 'script_click' in self.page.failing_clicks:
			raise RuntimeError('element is detached')
		self.page.actions.append(('script_click', self.selector))
		self.page.fire_click(self.selector)
		return None

	async def bounding_box(self) -> dict[str, float] | None:
		return {'x': 10, 'y': 40, 'width': 100, 'height': 20}

	async def fill(self, value: str, timeout: float | None = None) -> None:
		if self.page.fill_error is not None:
			raise self.page.fill_error
		self.page.actions.append(('fill', self.selector, value))

	async def press_sequentially(self, text: str, delay: float = 0, timeout: float | None = None) -> None:
		self.page.actions.append(('type', self.selector, text))

	async def select_option(self, label: str | None = None, timeout: float | None = None) -> list[str]:
		self.page.actions.append(('select', self.selector, label))
		return [label or '']


class FakePage:
	"""Just enough of playwright's Page for the session, dom service and controller"""

	def __init__(self, context: 'FakeContext', url: str = 'about:blank', title: str = 'Test Page', probe: Any = None):
		self.context = context
		self.url = url
		self._title = title
		# dict, callable returning a dict, or an exception to raise
		self.probe: Any = probe if probe is not None else default_probe()
		self.probe_delay = 0.0
		self.probe_calls: list[dict] = []
		self.health_result: Any = 2
		self.metrics = dict(DEFAULT_METRICS)
		self.html = '<html><body><h1>Test Page</h1><p>Hello <a href="/next">next page</a></p></body></html>'
		self.dropdown_options: list[dict] | None = None
		self.page_text = 'Welcome to the test page'

		self.closed = False
		self.listeners: dict[str, list] = defaultdict(list)
		self.stuck_requests: list[FakeRequest] = []
		self.redirects: dict[str, str] = {}
		self.missing_selectors: set[str] = set()
		self.failing_clicks: set[str] = set()
		self.fill_error: Exception | None = None
		self.on_click: Any = None

		self.actions: list[tuple] = []
		self.goto_calls: list[str] = []
		self.scrolls: list[int] = []
		self.highlight_removals = 0
		self.keyboard = FakeKeyboard(self)
		self.mouse = FakeMouse(self)

	def __repr__(self) -> str:
		return f'FakePage({self.url})'

	def fire_click(self, selector: str) -> None:
		if self.on_click is not None:
			self.on_click(self, selector)

	# events

	def on(self, event: str, handler: Any) -> None:
		self.listeners[event].append(handler)
		if event == 'request':
			for request in self.stuck_requests:
				handler(request)

	def remove_listener(self, event: str, handler: Any) -> None:
		if handler in self.listeners[event]:
			self.listeners[event].remove(handler)

	# scripts

	async def evaluate(self, expression: str, arg: Any = None) -> Any:
		if expression == HEALTH_CHECK_JS:
			if isinstance(self.health_result, Exception):
				raise self.health_result
			return self.health_result
		if expression == DOM_TREE_PROBE_JS:
			self.probe_calls.append(arg)
			if self.probe_delay:
				await asyncio.sleep(self.probe_delay)
			probe = self.probe(self) if callable(self.probe) else self.probe
			if isinstance(probe, Exception):
				raise probe
			return copy.deepcopy(probe)
		if expression == PAGE_INFO_JS:
			return dict(self.metrics)
		if expression == REMOVE_HIGHLIGHTS_JS:
			self.highlight_removals += 1
			return None
		if expression == SCROLL_BY_JS:
			self.scrolls.append(arg)
			self.metrics['scroll_y'] = max(0, self.metrics['scroll_y'] + arg)
			return None
		if expression == SCROLL_TO_TEXT_JS:
			return arg.lower() in self.page_text.lower()
		raise NotImplementedError(f'FakePage cannot evaluate {expression[:40]!r}')

	# navigation

	async def goto(self, url: str, wait_until: str | None = None, timeout: float | None = None) -> None:
		self.goto_calls.append(url)
		self.url = self.redirects.get(url, url)

	async def go_back(self, timeout: float | None = None, wait_until: str | None = None) -> None:
		if len(self.goto_calls) > 1:
			self.url = self.goto_calls[-2]

	async def reload(self, timeout: float | None = None, wait_until: str | None = None) -> None:
		self.actions.append(('reload',))

	async def wait_for_load_state(self, state: str = 'load', timeout: float | None = None) -> None:
		return None

	async def bring_to_front(self) -> None:
		return None

	# content

	async def title(self) -> str:
		return self._title

	async def content(self) -> str:
		return self.html

	async def screenshot(self, full_page: bool = False, animations: str | None = None, timeout: float | None = None) -> bytes:
		return b'\x89PNG fake screenshot'

	def locator(self, selector: str) -> FakeLocator:
		return FakeLocator(self, selector)

	# lifecycle

	def is_closed(self) -> bool:
		return self.closed

	async def close(self) -> None:
		self.closed = True
		if self in self.context.pages:
			self.context.pages.remove(self)


class FakeTracing:
	def __init__(self):
		self.started = False
		self.saved_to: str | None = None

	async def start(self, screenshots: bool = True, snapshots: bool = True, sources: bool = False) -> None:
		self.started = True

	async def stop(self, path: str | None = None) -> None:
		self.started = False
		self.saved_to = path


class FakeContext:
	def __init__(self):
		self.pages: list[FakePage] = []
		self.listeners: dict[str, list] = defaultdict(list)
		self.tracing = FakeTracing()
		self.closed = False

	def on(self, event: str, handler: Any) -> None:
		self.listeners[event].append(handler)

	def add_page(self, url: str = 'about:blank', **kwargs: Any) -> FakePage:
		page = FakePage(self, url=url, **kwargs)
		self.pages.append(page)
		for handler in self.listeners['page']:
			handler(page)
		return page

	async def new_page(self) -> FakePage:
		return self.add_page()

	async def close(self) -> None:
		self.closed = True
		for handler in self.listeners['close']:
			handler(self)


# --- decision source ---


class MockLLM:
	"""Replays scripted completions. The last one repeats once the script runs out."""

	model = 'mock-model'

	def __init__(self, responses: list[Any]):
		assert responses, 'MockLLM needs at least one response'
		self.responses = list(responses)
		self.calls: list[list] = []

	@property
	def provider(self) -> str:
		return 'mock'

	@property
	def name(self) -> str:
		return self.model

	async def ainvoke(self, messages: list, output_format: Any = None) -> ChatInvokeCompletion:
		self.calls.append(list(messages))
		response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
		if isinstance(response, Exception):
			raise response
		return ChatInvokeCompletion(completion=response, usage=None)

	def last_state_text(self) -> str:
		return self.calls[-1][-1].text


def action_json(*actions: dict[str, Any], **brain: str) -> str:
	"""A well-formed decision with the given actions"""
	return json.dumps(
		{
			'thinking': brain.get('thinking', 'Looking at the page'),
			'evaluation_previous_goal': brain.get('evaluation_previous_goal', 'Unknown'),
			'memory': brain.get('memory', ''),
			'next_goal': brain.get('next_goal', 'Continue the task'),
			'action': list(actions),
		}
	)


def create_mock_llm(actions: list[Any] | None = None) -> MockLLM:
	"""Scripted decision source, finishing with a successful done when no actions are given"""
	if actions is None:
		actions = [action_json({'done': {'text': 'Task completed successfully', 'success': True}})]
	return MockLLM(actions)


# --- fixtures ---


@pytest.fixture
def browser_profile(tmp_path):
	return BrowserProfile(
		headless=True,
		minimum_wait_page_load_time=0,
		wait_for_network_idle_page_load_time=0,
		maximum_wait_page_load_time=1.0,
		wait_between_actions=0,
		typing_delay_ms=0,
		health_check_timeout=1.0,
		dom_build_timeout=2.0,
		downloads_path=tmp_path / 'downloads',
	)


@pytest.fixture
def fake_context():
	return FakeContext()


@pytest.fixture
def fake_page(fake_context):
	return fake_context.add_page(url='https://example.com/', title='Example Domain')


@pytest.fixture
async def browser_session(browser_profile, fake_page):
	"""Session borrowing the fake page, so stop() leaves the fakes alone"""
	browser_session = BrowserSession(browser_profile=browser_profile, page=fake_page)
	await browser_session.start()
	yield browser_session
	await browser_session.stop()


@pytest.fixture
def mock_llm():
	return create_mock_llm()
