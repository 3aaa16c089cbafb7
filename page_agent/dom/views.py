import hashlib
from dataclasses import dataclass, field
from functools import cached_property

from page_agent.dom.utils import cap_text_length

# Attributes rendered next to an indexed element, in this order
DEFAULT_INCLUDE_ATTRIBUTES = [
	'title',
	'type',
	'checked',
	'name',
	'role',
	'value',
	'placeholder',
	'data-date-format',
	'alt',
	'aria-label',
	'aria-expanded',
	'data-state',
	'aria-checked',
]


@dataclass
class Rect:
	x: float
	y: float
	width: float
	height: float


@dataclass(frozen=True)
class HashedDomElement:
	"""
	Hash of the dom element to be used as a unique identifier across snapshots
	"""

	branch_path_hash: str
	attributes_hash: str
	xpath_hash: str


@dataclass
class DOMBaseNode:
	is_visible: bool
	# Non-owning back-reference. Not part of equality or serialization so the tree stays acyclic.
	parent: 'DOMElementNode | None' = field(default=None, repr=False, compare=False)

	def __json__(self) -> dict:
		raise NotImplementedError('DOMBaseNode is an abstract class')


@dataclass
class DOMTextNode(DOMBaseNode):
	text: str = ''
	type: str = 'TEXT_NODE'

	def has_parent_with_highlight_index(self) -> bool:
		current = self.parent
		while current is not None:
			if current.highlight_index is not None:
				return True
			current = current.parent
		return False

	def __json__(self) -> dict:
		return {'text': self.text, 'type': self.type}


@dataclass
class DOMElementNode(DOMBaseNode):
	"""
	xpath: the xpath of the element from the last root node (shadow root or iframe OR document if no shadow root or iframe).
	To properly reference the element we need to recursively switch the root node until we find the element (work you way up the tree with `.parent`)
	"""

	tag_name: str = ''
	xpath: str = ''
	attributes: dict[str, str] = field(default_factory=dict)
	children: list['DOMElementNode | DOMTextNode'] = field(default_factory=list)
	is_interactive: bool = False
	is_top_element: bool = False
	is_in_viewport: bool = False
	shadow_root: bool = False
	highlight_index: int | None = None
	rect: Rect | None = None

	def __repr__(self) -> str:
		tag_str = f'<{self.tag_name}'

		for key, value in self.attributes.items():
			tag_str += f' {key}="{value}"'
		tag_str += '>'

		extras = []
		if self.is_interactive:
			extras.append('interactive')
		if self.is_top_element:
			extras.append('top')
		if self.shadow_root:
			extras.append('shadow-root')
		if self.highlight_index is not None:
			extras.append(f'highlight:{self.highlight_index}')
		if self.is_in_viewport:
			extras.append('in-viewport')

		if extras:
			tag_str += f' [{", ".join(extras)}]'

		return tag_str

	def __json__(self) -> dict:
		return {
			'tag_name': self.tag_name,
			'xpath': self.xpath,
			'attributes': self.attributes,
			'is_visible': self.is_visible,
			'is_interactive': self.is_interactive,
			'is_top_element': self.is_top_element,
			'is_in_viewport': self.is_in_viewport,
			'shadow_root': self.shadow_root,
			'highlight_index': self.highlight_index,
			'children': [child.__json__() for child in self.children],
		}

	@cached_property
	def hash(self) -> HashedDomElement:
		branch_path = []
		current: DOMElementNode | None = self
		while current is not None and current.parent is not None:
			branch_path.append(current.tag_name)
			current = current.parent
		branch_path.reverse()

		attributes_string = ''.join(f'{key}={value}' for key, value in self.attributes.items())
		return HashedDomElement(
			branch_path_hash=hashlib.sha256('/'.join(branch_path).encode()).hexdigest(),
			attributes_hash=hashlib.sha256(attributes_string.encode()).hexdigest(),
			xpath_hash=hashlib.sha256(self.xpath.encode()).hexdigest(),
		)

	def get_all_text_till_next_clickable_element(self, max_depth: int = -1) -> str:
		text_parts = []

		def collect_text(node: DOMElementNode | DOMTextNode, current_depth: int) -> None:
			if max_depth != -1 and current_depth > max_depth:
				return

			# Skip this branch if we hit a highlighted element (except for the current node)
			if isinstance(node, DOMElementNode) and node is not self and node.highlight_index is not None:
				return

			if isinstance(node, DOMTextNode):
				text_parts.append(node.text)
			elif isinstance(node, DOMElementNode):
				for child in node.children:
					collect_text(child, current_depth + 1)

		collect_text(self, 0)
		return '\n'.join(text_parts).strip()

	@property
	def css_selector(self) -> str | None:
		"""A best-effort CSS selector: id first, then the xpath rewritten as nth-of-type steps."""
		element_id = self.attributes.get('id', '').strip()
		if element_id and element_id.replace('-', '').replace('_', '').isalnum() and not element_id[0].isdigit():
			return f'#{element_id}'
		return convert_simple_xpath_to_css_selector(self.xpath)

	@property
	def descriptor(self) -> 'ElementDescriptor':
		return ElementDescriptor(
			highlight_index=self.highlight_index if self.highlight_index is not None else -1,
			tag_name=self.tag_name,
			xpath=self.xpath or None,
			css_selector=self.css_selector,
			rect=self.rect,
			text=cap_text_length(self.get_all_text_till_next_clickable_element(), 80),
		)


def convert_simple_xpath_to_css_selector(xpath: str) -> str | None:
	"""Converts simple XPath expressions like html/body/div[2]/a to CSS selectors."""
	if not xpath:
		return None

	xpath = xpath.strip('/')
	css_parts = []
	for part in xpath.split('/'):
		if not part:
			continue
		if ':' in part or '(' in part:
			# namespaced or function steps have no css counterpart
			return None
		if '[' in part:
			base_part = part[: part.find('[')]
			index_part = part[part.find('[') + 1 : part.find(']')]
			if not index_part.isdigit():
				return None
			css_parts.append(f'{base_part}:nth-of-type({index_part})')
		else:
			css_parts.append(part)

	return ' > '.join(css_parts) or None


@dataclass(frozen=True)
class ElementDescriptor:
	"""Locator for relocating a live element, valid only for the snapshot it came from."""

	highlight_index: int
	tag_name: str
	xpath: str | None = None
	css_selector: str | None = None
	rect: Rect | None = None
	text: str = ''

	def locator_candidates(self) -> list[str]:
		"""Playwright selectors in preference order: structural path, css, tag name."""
		candidates = []
		if self.xpath:
			xpath = self.xpath if self.xpath.startswith('/') else f'/{self.xpath}'
			candidates.append(f'xpath={xpath}')
		if self.css_selector:
			candidates.append(f'css={self.css_selector}')
		if self.tag_name:
			candidates.append(self.tag_name)
		return candidates


SelectorMap = dict[int, DOMElementNode]


@dataclass
class DOMState:
	element_tree: DOMElementNode
	selector_map: SelectorMap
	# set when the probe failed and the tree is the synthetic fallback
	error: str | None = None

	@property
	def is_fallback(self) -> bool:
		return self.error is not None
