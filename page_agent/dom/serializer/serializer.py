# @file purpose: Serializes indexed DOM trees to a bounded string for the decision model, and hashes it

import hashlib

from page_agent.dom.utils import cap_text_length
from page_agent.dom.views import DEFAULT_INCLUDE_ATTRIBUTES, DOMElementNode, DOMTextNode
from page_agent.utils import time_execution_sync

DEFAULT_MAX_CHARS = 40000


class DOMTreeSerializer:
	"""Serializes the indexed element tree to `[index]<tag attr=val>text />` lines."""

	def __init__(
		self,
		root_node: DOMElementNode,
		include_attributes: list[str] | None = None,
		max_text_length: int = 100,
	):
		self.root_node = root_node
		self.include_attributes = include_attributes if include_attributes is not None else DEFAULT_INCLUDE_ATTRIBUTES
		self.max_text_length = max_text_length

	@time_execution_sync('--serialize_tree')
	def serialize(self) -> str:
		"""Unbounded rendering of the whole tree, the input for the change signature."""
		formatted_text: list[str] = []
		self._serialize_node(self.root_node, 0, formatted_text)
		return '\n'.join(formatted_text)

	def _serialize_node(self, node: DOMElementNode | DOMTextNode, depth: int, formatted_text: list[str]) -> None:
		depth_str = depth * '\t'
		next_depth = depth

		if isinstance(node, DOMElementNode):
			if node.highlight_index is not None:
				next_depth += 1

				text = node.get_all_text_till_next_clickable_element()
				text = ' '.join(text.split())
				attributes_html_str = self._build_attributes_string(node, self.include_attributes, text)

				line = f'{depth_str}[{node.highlight_index}]<{node.tag_name}'
				if attributes_html_str:
					line += f' {attributes_html_str}'
				line += '>'
				if text:
					line += cap_text_length(text, self.max_text_length)
				line += ' />'
				formatted_text.append(line)

			for child in node.children:
				self._serialize_node(child, next_depth, formatted_text)

		elif isinstance(node, DOMTextNode):
			# text owned by an indexed element is already on that element's line
			if node.has_parent_with_highlight_index():
				return
			if node.parent is not None and node.parent.is_visible and node.parent.is_top_element:
				formatted_text.append(f'{depth_str}{cap_text_length(node.text, self.max_text_length)}')

	@staticmethod
	def _build_attributes_string(node: DOMElementNode, include_attributes: list[str], text: str) -> str:
		"""Build the attributes string for an element."""
		if not node.attributes:
			return ''

		attributes_to_include = {
			key: str(value).strip()
			for key, value in node.attributes.items()
			if key in include_attributes and str(value).strip() != ''
		}

		# Remove duplicate values
		ordered_keys = [key for key in include_attributes if key in attributes_to_include]

		if len(ordered_keys) > 1:
			keys_to_remove = set()
			seen_values = {}

			for key in ordered_keys:
				value = attributes_to_include[key]
				if len(value) > 5:
					if value in seen_values:
						keys_to_remove.add(key)
					else:
						seen_values[value] = key

			for key in keys_to_remove:
				del attributes_to_include[key]

		if attributes_to_include.get('role') == node.tag_name:
			attributes_to_include.pop('role', None)

		attrs_to_remove_if_text_matches = ['aria-label', 'placeholder', 'title']
		for attr in attrs_to_remove_if_text_matches:
			if attributes_to_include.get(attr) and attributes_to_include.get(attr, '').strip().lower() == text.strip().lower():
				del attributes_to_include[attr]

		if attributes_to_include:
			return ' '.join(
				f'{key}={cap_text_length(value, 15)}' for key, value in sorted(attributes_to_include.items(), key=lambda kv: ordered_keys.index(kv[0]))
			)

		return ''

	@staticmethod
	def compute_signature(serialized: str) -> str:
		"""Content hash: equal text gives an equal signature."""
		return hashlib.sha256(serialized.encode('utf-8')).hexdigest()

	@staticmethod
	def render_bounded(
		elements_text: str,
		pixels_above: int = 0,
		pixels_below: int = 0,
		viewport_height: int = 0,
		max_chars: int = DEFAULT_MAX_CHARS,
	) -> str:
		"""Wrap the rendering with scroll markers and cut it to `max_chars`, appending a truncation notice."""
		if elements_text:
			if pixels_above > 0:
				pages_above = pixels_above / viewport_height if viewport_height else 0
				elements_text = (
					f'... {pixels_above} pixels above ({pages_above:.1f} pages) - scroll to see more ...\n{elements_text}'
				)
			else:
				elements_text = f'[Start of page]\n{elements_text}'

			if pixels_below > 0:
				pages_below = pixels_below / viewport_height if viewport_height else 0
				elements_text = (
					f'{elements_text}\n... {pixels_below} pixels below ({pages_below:.1f} pages) - scroll to see more ...'
				)
			else:
				elements_text = f'{elements_text}\n[End of page]'
		else:
			elements_text = 'empty page'

		if max_chars >= 0 and len(elements_text) > max_chars:
			omitted = len(elements_text) - max_chars
			elements_text = elements_text[:max_chars] + f'\n[... truncated {omitted} characters, use scroll or extract_content to see more ...]'

		return elements_text
