from typing import Generic, TypeVar

from pydantic import BaseModel, Field, model_validator

from page_agent.controller.registry.service import NoParamsAction


# Action Input Models
class SearchGoogleAction(BaseModel):
	query: str


class GoToUrlAction(BaseModel):
	url: str
	new_tab: bool = False  # True to open in new tab, False to navigate in current tab


class WaitAction(BaseModel):
	seconds: int = Field(default=3, description='Seconds to wait, at most 10')


class ClickElementAction(BaseModel):
	index: int


class InputTextAction(BaseModel):
	index: int
	text: str


class SendKeysAction(BaseModel):
	keys: str


class DropdownOptionsAction(BaseModel):
	index: int


class SelectDropdownOptionAction(BaseModel):
	index: int
	text: str = Field(description='Exact visible text of the option to select')


class SwitchTabAction(BaseModel):
	page_id: int


class OpenTabAction(BaseModel):
	url: str


class CloseTabAction(BaseModel):
	page_id: int


class ScrollAction(BaseModel):
	down: bool = True  # True to scroll down, False to scroll up
	num_pages: float = Field(default=1.0, gt=0)  # Number of pages to scroll (0.5 = half page, 1.0 = one page, etc.)


class ScrollToTextAction(BaseModel):
	text: str


class ExtractContentAction(BaseModel):
	query: str = Field(default='', description='What to extract. Leave empty to get the page as markdown')
	extract_links: bool = False


class WriteFileAction(BaseModel):
	file_name: str
	content: str


class ReadFileAction(BaseModel):
	file_name: str


class ReplaceFileStrAction(BaseModel):
	file_name: str
	old_str: str
	new_str: str


class _TerminalAction(BaseModel):
	success: bool
	is_done: bool = True

	@model_validator(mode='after')
	def _success_requires_done(self):
		if self.success and not self.is_done:
			raise ValueError('success=True is only allowed on a terminal result (is_done=True)')
		return self


class DoneAction(_TerminalAction):
	text: str
	files_to_display: list[str] | None = []


T = TypeVar('T', bound=BaseModel)


class StructuredOutputAction(_TerminalAction, Generic[T]):
	success: bool = True
	data: T


__all__ = [
	'NoParamsAction',
	'SearchGoogleAction',
	'GoToUrlAction',
	'WaitAction',
	'ClickElementAction',
	'InputTextAction',
	'SendKeysAction',
	'DropdownOptionsAction',
	'SelectDropdownOptionAction',
	'SwitchTabAction',
	'OpenTabAction',
	'CloseTabAction',
	'ScrollAction',
	'ScrollToTextAction',
	'ExtractContentAction',
	'WriteFileAction',
	'ReadFileAction',
	'ReplaceFileStrAction',
	'DoneAction',
	'StructuredOutputAction',
]
