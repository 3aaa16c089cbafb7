from bubus import BaseEvent
from pydantic import Field


class AgentStepEvent(BaseEvent):
	"""Dispatched after every step of a run"""

	agent_id: str
	step: int
	actions: list[str] = Field(default_factory=list)
	errors: int = 0
	url: str = ''


class AgentRunFinishedEvent(BaseEvent):
	"""Dispatched once when a run ends, whatever the reason"""

	agent_id: str
	status: str
	steps: int
	success: bool | None = None
	final_result: str | None = None
