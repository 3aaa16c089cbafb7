import time
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict

from page_agent.dom.views import DOMState, ElementDescriptor


# Pydantic
class TabInfo(BaseModel):
	"""Represents information about a browser tab"""

	model_config = ConfigDict(extra='forbid')

	page_id: int
	url: str
	title: str


class PageInfo(BaseModel):
	"""Comprehensive page size and scroll information"""

	# Current viewport dimensions
	viewport_width: int
	viewport_height: int

	# Total page dimensions
	page_width: int
	page_height: int

	# Current scroll position
	scroll_x: int
	scroll_y: int

	# Calculated scroll information
	pixels_above: int
	pixels_below: int
	pixels_left: int
	pixels_right: int

	@classmethod
	def from_metrics(cls, metrics: dict[str, Any]) -> 'PageInfo':
		viewport_width = int(metrics.get('viewport_width') or 0)
		viewport_height = int(metrics.get('viewport_height') or 0)
		page_width = int(metrics.get('page_width') or viewport_width)
		page_height = int(metrics.get('page_height') or viewport_height)
		scroll_x = int(metrics.get('scroll_x') or 0)
		scroll_y = int(metrics.get('scroll_y') or 0)
		return cls(
			viewport_width=viewport_width,
			viewport_height=viewport_height,
			page_width=page_width,
			page_height=page_height,
			scroll_x=scroll_x,
			scroll_y=scroll_y,
			pixels_above=scroll_y,
			pixels_below=max(0, page_height - viewport_height - scroll_y),
			pixels_left=scroll_x,
			pixels_right=max(0, page_width - viewport_width - scroll_x),
		)


@dataclass
class DomSnapshot(DOMState):
	"""One timestamped rendering of the page's interactive surface plus page metadata."""

	url: str = ''
	title: str = ''
	tabs: list[TabInfo] = field(default_factory=list)
	page_info: PageInfo | None = None
	screenshot: str | None = field(default=None, repr=False)
	is_pdf_viewer: bool = False
	browser_errors: list[str] = field(default_factory=list)
	timestamp: float = field(default_factory=time.time)
	# unbounded element rendering and its content hash
	elements_text: str = field(default='', repr=False)
	signature: str = ''

	@property
	def pixels_above(self) -> int:
		return self.page_info.pixels_above if self.page_info else 0

	@property
	def pixels_below(self) -> int:
		return self.page_info.pixels_below if self.page_info else 0

	def render(self, max_chars: int = 40000) -> str:
		from page_agent.dom.serializer.serializer import DOMTreeSerializer

		return DOMTreeSerializer.render_bounded(
			self.elements_text,
			pixels_above=self.pixels_above,
			pixels_below=self.pixels_below,
			viewport_height=self.page_info.viewport_height if self.page_info else 0,
			max_chars=max_chars,
		)


@dataclass
class BrowserStateHistory:
	"""The summary of the browser's state at a past point in time"""

	url: str
	title: str
	tabs: list[TabInfo] = field(default_factory=list)
	interacted_element: ElementDescriptor | None = None
	timestamp: float = field(default_factory=time.time)

	def to_dict(self) -> dict[str, Any]:
		data: dict[str, Any] = {}
		data['tabs'] = [tab.model_dump() for tab in self.tabs]
		data['interacted_element'] = (
			{
				'highlight_index': self.interacted_element.highlight_index,
				'tag_name': self.interacted_element.tag_name,
				'xpath': self.interacted_element.xpath,
				'css_selector': self.interacted_element.css_selector,
			}
			if self.interacted_element
			else None
		)
		data['url'] = self.url
		data['title'] = self.title
		data['timestamp'] = self.timestamp
		return data


class BrowserError(Exception):
	"""Base class for all browser errors"""

	message: str
	details: dict[str, Any] | None = None

	def __init__(self, message: str, details: dict[str, Any] | None = None):
		self.message = message
		super().__init__(message)
		self.details = details

	def __str__(self) -> str:
		if self.details:
			return f'{self.message} ({self.details})'
		return self.message


class URLNotAllowedError(BrowserError):
	"""Error raised when a URL is not allowed"""


class ElementNotFoundError(BrowserError):
	"""The index is not in the current snapshot's selector map, refresh and retry"""


class BrowserClosedError(BrowserError):
	"""The browser or context went away, the run cannot continue"""
