from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from page_agent.llm.messages import BaseMessage

HistoryKind = Literal['step', 'error', 'note']


class HistoryItem(BaseModel):
	"""One folded entry of the agent history description shown to the model"""

	model_config = ConfigDict(frozen=True)

	kind: HistoryKind = 'step'
	step_number: int | None = None
	lines: tuple[str, ...] = ()

	@classmethod
	def from_step(
		cls,
		step_number: int | None,
		evaluation_previous_goal: str | None,
		memory: str | None,
		next_goal: str | None,
		action_results: str | None,
	) -> HistoryItem:
		labelled = (
			('Evaluation of Previous Step', evaluation_previous_goal),
			('Memory', memory),
			('Next Goal', next_goal),
		)
		lines = [f'{label}: {value}' for label, value in labelled if value]
		if action_results:
			lines.append(action_results)
		return cls(kind='step', step_number=step_number, lines=tuple(lines))

	@classmethod
	def failed(cls, step_number: int | None, error: str) -> HistoryItem:
		return cls(kind='error', step_number=step_number, lines=(error,))

	@classmethod
	def note(cls, text: str, step_number: int | None = None) -> HistoryItem:
		return cls(kind='note', step_number=step_number, lines=(text,))

	def render(self) -> str:
		body = '\n'.join(self.lines)
		if self.kind == 'note':
			return f'<sys>\n{body}\n</sys>'
		tag = 'step_unknown' if self.step_number is None else f'step_{self.step_number}'
		return f'<{tag}>\n{body}\n</{tag}>'


class MessageManagerState(BaseModel):
	"""What the message manager carries between steps"""

	model_config = ConfigDict(arbitrary_types_allowed=True)

	system_message: BaseMessage | None = None
	# only the latest state message is ever sent
	state_message: BaseMessage | None = None
	history_items: list[HistoryItem] = Field(default_factory=lambda: [HistoryItem.note('Agent initialized', step_number=0)])
	# extracted content shown for exactly one step
	read_state: str = ''

	def messages(self) -> list[BaseMessage]:
		return [message for message in (self.system_message, self.state_message) if message is not None]
