import asyncio
import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from page_agent.dom.probe import DOM_TREE_PROBE_JS, HEALTH_CHECK_JS, REMOVE_HIGHLIGHTS_JS
from page_agent.dom.views import DOMElementNode, DOMState, DOMTextNode, Rect, SelectorMap
from page_agent.utils import is_new_tab_page, time_execution_async

if TYPE_CHECKING:
	from playwright.async_api import Page


class DomBuildOptions(BaseModel):
	"""Options forwarded to the in-page probe"""

	highlight_elements: bool = True
	focus_element: int = -1
	viewport_expansion: int = 500
	include_hidden: bool = False
	max_text_length: int = 0
	strip_comments: bool = True
	strip_scripts: bool = True
	timeout: float = Field(default=10.0, gt=0)

	def probe_args(self) -> dict[str, Any]:
		return {
			'doHighlightElements': self.highlight_elements,
			'focusHighlightIndex': self.focus_element,
			'viewportExpansion': self.viewport_expansion,
			'includeHidden': self.include_hidden,
			'maxTextLength': self.max_text_length,
			'stripComments': self.strip_comments,
			'stripScripts': self.strip_scripts,
		}


class DomService:
	"""Builds an indexed DOMState from the live page."""

	logger: logging.Logger

	def __init__(self, page: 'Page', logger: logging.Logger | None = None):
		self.page = page
		self.logger = logger or logging.getLogger(__name__)

	@time_execution_async('--build')
	async def build(self, options: DomBuildOptions | None = None) -> DOMState:
		"""Evaluate the probe and construct the tree. Never raises: failures degrade to the fallback state."""
		options = options or DomBuildOptions()

		if is_new_tab_page(self.page.url) or self.page.url.startswith('chrome://'):
			# empty page, nothing to probe
			return self.empty_state()

		try:
			return await asyncio.wait_for(self._build_dom_tree(options), timeout=options.timeout)
		except asyncio.TimeoutError:
			reason = f'DOM probe timed out after {options.timeout}s'
		except Exception as e:
			reason = f'DOM probe failed: {type(e).__name__}: {e}'

		self.logger.warning(f'⚠️ {reason}, using fallback snapshot')
		return self.fallback_state(reason)

	async def remove_highlights(self) -> None:
		try:
			await self.page.evaluate(REMOVE_HIGHLIGHTS_JS)
		except Exception as e:
			self.logger.debug(f'Failed to remove highlights (this is usually ok): {type(e).__name__}: {e}')

	async def _build_dom_tree(self, options: DomBuildOptions) -> DOMState:
		if await self.page.evaluate(HEALTH_CHECK_JS) != 2:
			raise ValueError('The page cannot evaluate javascript code properly')

		eval_page = await self.page.evaluate(DOM_TREE_PROBE_JS, options.probe_args())
		if not isinstance(eval_page, dict) or 'map' not in eval_page:
			raise ValueError(f'Unexpected probe result of type {type(eval_page).__name__}')

		element_tree, selector_map = self._construct_dom_tree(eval_page)
		return DOMState(element_tree=element_tree, selector_map=selector_map)

	def _construct_dom_tree(self, eval_page: dict) -> tuple[DOMElementNode, SelectorMap]:
		js_node_map: dict[str, dict] = eval_page['map']
		js_root_id = eval_page.get('rootId')

		selector_map: SelectorMap = {}
		node_map: dict[str, DOMElementNode | DOMTextNode] = {}

		for node_id, node_data in js_node_map.items():
			node = self._parse_node(node_data)
			if node is None:
				continue
			node_map[str(node_id)] = node

			# only visible, interactive elements are addressable
			if isinstance(node, DOMElementNode) and node.highlight_index is not None:
				if node.is_visible and node.is_interactive and node.highlight_index not in selector_map:
					selector_map[node.highlight_index] = node
				else:
					node.highlight_index = None

		for node_id, node_data in js_node_map.items():
			node = node_map.get(str(node_id))
			if not isinstance(node, DOMElementNode):
				continue
			for child_id in node_data.get('children', []):
				child_node = node_map.get(str(child_id))
				if child_node is None or child_node.parent is not None or child_node is node:
					continue
				child_node.parent = node
				node.children.append(child_node)

		html_to_dict = node_map.get(str(js_root_id))
		if html_to_dict is None or not isinstance(html_to_dict, DOMElementNode):
			raise ValueError('Failed to parse HTML to dictionary')

		return html_to_dict, selector_map

	def _parse_node(self, node_data: dict) -> DOMElementNode | DOMTextNode | None:
		if not node_data:
			return None

		if node_data.get('type') == 'TEXT_NODE':
			return DOMTextNode(text=node_data.get('text', ''), is_visible=bool(node_data.get('isVisible', False)))

		rect_data = node_data.get('rect')
		rect = None
		if isinstance(rect_data, dict):
			rect = Rect(
				x=float(rect_data.get('x', 0)),
				y=float(rect_data.get('y', 0)),
				width=float(rect_data.get('width', 0)),
				height=float(rect_data.get('height', 0)),
			)

		highlight_index = node_data.get('highlightIndex')
		return DOMElementNode(
			tag_name=node_data.get('tagName', ''),
			xpath=node_data.get('xpath', ''),
			attributes={str(k): str(v) for k, v in (node_data.get('attributes') or {}).items()},
			is_visible=bool(node_data.get('isVisible', False)),
			is_interactive=bool(node_data.get('isInteractive', False)),
			is_top_element=bool(node_data.get('isTopElement', False)),
			is_in_viewport=bool(node_data.get('isInViewport', False)),
			shadow_root=bool(node_data.get('shadowRoot', False)),
			highlight_index=int(highlight_index) if highlight_index is not None else None,
			rect=rect,
		)

	@staticmethod
	def empty_state() -> DOMState:
		return DOMState(
			element_tree=DOMElementNode(
				tag_name='body',
				xpath='',
				attributes={},
				children=[],
				is_visible=False,
				parent=None,
			),
			selector_map={},
		)

	@staticmethod
	def fallback_state(reason: str) -> DOMState:
		"""Minimal state so the rest of the loop can still navigate: the body is the only addressable element."""
		body = DOMElementNode(
			tag_name='body',
			xpath='/html/body',
			attributes={},
			children=[],
			is_visible=True,
			is_interactive=True,
			is_top_element=True,
			is_in_viewport=True,
			highlight_index=0,
			parent=None,
		)
		return DOMState(element_tree=body, selector_map={0: body}, error=reason)
