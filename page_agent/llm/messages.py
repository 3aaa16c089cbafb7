"""Role-tagged messages sent to the reasoning service."""

from typing import Literal

from pydantic import BaseModel


def _truncate(text: str, max_length: int = 50) -> str:
	"""Truncate text to max_length characters, adding ellipsis if truncated."""
	if len(text) <= max_length:
		return text
	return text[: max_length - 3] + '...'


class ContentPartTextParam(BaseModel):
	text: str
	type: Literal['text'] = 'text'

	def __str__(self) -> str:
		return f'💬[text: {_truncate(self.text)}]'


class ImageURL(BaseModel):
	url: str
	"""Either a URL of the image or the base64 encoded image data."""
	detail: Literal['auto', 'low', 'high'] = 'auto'
	media_type: Literal['image/jpeg', 'image/png', 'image/gif', 'image/webp'] = 'image/png'


class ContentPartImageParam(BaseModel):
	image_url: ImageURL
	type: Literal['image_url'] = 'image_url'

	def __str__(self) -> str:
		return f'🖼️[image: {_truncate(self.image_url.url, 30)}]'


class _MessageBase(BaseModel):
	"""Base class for all message types"""

	role: Literal['user', 'system', 'assistant']

	cache: bool = False
	"""Whether to cache this message. This is only applicable when using Anthropic models."""


class UserMessage(_MessageBase):
	role: Literal['user'] = 'user'

	content: str | list[ContentPartTextParam | ContentPartImageParam]

	name: str | None = None

	@property
	def text(self) -> str:
		"""
		Automatically parse the text inside content, whether it's a string or a list of content parts.
		"""
		if isinstance(self.content, str):
			return self.content
		return '\n'.join(part.text for part in self.content if part.type == 'text')

	def __str__(self) -> str:
		return f'UserMessage(content={self.text})'


class SystemMessage(_MessageBase):
	role: Literal['system'] = 'system'

	content: str | list[ContentPartTextParam]

	name: str | None = None

	@property
	def text(self) -> str:
		if isinstance(self.content, str):
			return self.content
		return '\n'.join(part.text for part in self.content)

	def __str__(self) -> str:
		return f'SystemMessage(content={self.text})'


class AssistantMessage(_MessageBase):
	role: Literal['assistant'] = 'assistant'

	content: str | None = None

	@property
	def text(self) -> str:
		return self.content or ''

	def __str__(self) -> str:
		return f'AssistantMessage(content={self.text})'


BaseMessage = UserMessage | SystemMessage | AssistantMessage
