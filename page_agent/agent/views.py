from __future__ import annotations

import hashlib
import json
import traceback
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model, field_serializer, model_validator

from page_agent.browser.views import BrowserStateHistory
from page_agent.controller.registry.views import ActionModel
from page_agent.dom.views import DEFAULT_INCLUDE_ATTRIBUTES
from page_agent.llm.base import BaseChatModel
from page_agent.llm.exceptions import ModelProviderError, ModelRateLimitError


class AgentSettings(BaseModel):
	"""Configuration options for the Agent"""

	use_vision: bool = True
	max_failures: int = Field(default=3, ge=1)
	recover_from_failures: bool = True
	retry_delay: float = Field(default=10, ge=0)
	max_actions_per_step: int = Field(default=10, ge=1)
	step_delay: float = Field(default=1.0, ge=0)
	llm_timeout: float = Field(default=90, gt=0)
	max_history_items: int | None = None
	include_attributes: list[str] = Field(default_factory=lambda: list(DEFAULT_INCLUDE_ATTRIBUTES))
	max_state_chars: int = 40000
	page_extraction_llm: BaseChatModel | None = None
	available_file_paths: list[str] | None = None
	loop_detection_enabled: bool = True
	loop_detection_window: int = Field(default=20, ge=1)

	@model_validator(mode='after')
	def _check_history_items(self) -> AgentSettings:
		if self.max_history_items is not None and self.max_history_items <= 5:
			raise ValueError('max_history_items must be None or greater than 5')
		return self


# waiting, finishing and going back are legitimate to repeat
LOOP_EXEMPT_ACTIONS = frozenset({'wait', 'done', 'go_back'})


def compute_action_hash(action_name: str, params: dict[str, Any]) -> str:
	"""Hash of an action and its params. Search queries hash the same regardless of term order and case."""
	normalized = dict(params)
	if action_name == 'search_google' and isinstance(normalized.get('query'), str):
		normalized['query'] = ' '.join(sorted(normalized['query'].lower().split()))
	payload = json.dumps({'action': action_name, 'params': normalized}, sort_keys=True, default=str)
	return hashlib.sha256(payload.encode()).hexdigest()[:16]


class ActionLoopDetector(BaseModel):
	"""Notices when the agent keeps repeating an action or the page stops changing"""

	window_size: int = Field(default=20, ge=1)
	repetition_threshold: int = 5
	stagnation_threshold: int = 5

	recent_action_hashes: list[str] = Field(default_factory=list)
	last_page_fingerprint: str | None = None
	consecutive_stagnant_pages: int = 0

	@property
	def max_repetition_count(self) -> int:
		return max(Counter(self.recent_action_hashes).values(), default=0)

	def record_action(self, action_name: str, params: dict[str, Any]) -> None:
		if action_name in LOOP_EXEMPT_ACTIONS:
			return
		self.recent_action_hashes.append(compute_action_hash(action_name, params))
		del self.recent_action_hashes[: -self.window_size]

	def record_page_state(self, url: str, dom_text: str, element_count: int) -> None:
		fingerprint = hashlib.sha256(f'{url}\n{element_count}\n{dom_text}'.encode()).hexdigest()
		if fingerprint == self.last_page_fingerprint:
			self.consecutive_stagnant_pages += 1
		else:
			self.consecutive_stagnant_pages = 0
		self.last_page_fingerprint = fingerprint

	def get_nudge_message(self) -> str | None:
		nudges = []
		repetitions = self.max_repetition_count
		if repetitions >= self.repetition_threshold:
			nudges.append(
				f'You have repeated a similar action {repetitions} times in the last {len(self.recent_action_hashes)} actions. '
				'If it is not getting you closer to the goal, try a different approach.'
			)
		if self.consecutive_stagnant_pages >= self.stagnation_threshold:
			nudges.append(
				f'The page content has not changed over the last {self.consecutive_stagnant_pages} observations, '
				'your actions may not be taking effect.'
			)
		return '\n'.join(nudges) or None


class AgentStatus(str, Enum):
	IDLE = 'idle'
	RUNNING = 'running'
	PAUSED = 'paused'
	STOPPED = 'stopped'
	COMPLETED = 'completed'
	MAX_STEPS_REACHED = 'max_steps_reached'


class AgentState(BaseModel):
	"""Holds all state information for an Agent"""

	model_config = ConfigDict(arbitrary_types_allowed=True)

	n_steps: int = 1
	consecutive_failures: int = 0
	recoveries: int = 0
	status: AgentStatus = AgentStatus.IDLE
	last_result: list[ActionResult] | None = None
	last_model_output: AgentOutput | None = None
	history: AgentHistoryList = Field(default_factory=lambda: AgentHistoryList(history=[]))
	loop_detector: ActionLoopDetector = Field(default_factory=lambda: ActionLoopDetector())

	@property
	def paused(self) -> bool:
		return self.status == AgentStatus.PAUSED

	@property
	def stopped(self) -> bool:
		return self.status == AgentStatus.STOPPED


@dataclass
class AgentStepInfo:
	step_number: int  # 1-based, same numbering as AgentState.n_steps
	max_steps: int

	def is_last_step(self) -> bool:
		"""Check if this is the last step"""
		return self.step_number >= self.max_steps


class ActionResult(BaseModel):
	"""Result of executing an action"""

	# For done action
	is_done: bool | None = False
	success: bool | None = None

	# Error handling - always include in long term memory
	error: str | None = None
	error_code: str | None = None

	# Files
	attachments: list[str] | None = None

	# Always include in long term memory
	long_term_memory: str | None = None

	# if update_only_read_state is True we add the extracted_content to the agent context only once for the next step
	# if update_only_read_state is False we add the extracted_content to the agent long term memory if no long_term_memory is provided
	extracted_content: str | None = None
	include_extracted_content_only_once: bool = False

	# Metadata for observability (e.g., click coordinates)
	metadata: dict | None = None

	# Deprecated
	include_in_memory: bool = False

	@model_validator(mode='after')
	def validate_success_requires_done(self) -> ActionResult:
		"""Ensure success=True can only be set when is_done=True"""
		if self.success is True and self.is_done is not True:
			raise ValueError(
				'success=True can only be set when is_done=True. '
				'For regular actions that succeed, leave success as None. '
				'Use success=False only for actions that fail.'
			)
		return self

	@property
	def message(self) -> str | None:
		return self.error or self.extracted_content


class AgentBrain(BaseModel):
	thinking: str | None = None
	evaluation_previous_goal: str = ''
	memory: str = ''
	next_goal: str = ''


class AgentOutput(BaseModel):
	model_config = ConfigDict(arbitrary_types_allowed=True, extra='forbid')

	thinking: str | None = None
	evaluation_previous_goal: str = ''
	memory: str = ''
	next_goal: str = ''
	action: list[ActionModel] = Field(
		...,
		description='List of actions to execute',
		json_schema_extra={'min_items': 1},  # Ensure at least one action is provided
	)

	@property
	def current_state(self) -> AgentBrain:
		"""For backward compatibility - returns an AgentBrain with the flattened properties"""
		return AgentBrain(
			thinking=self.thinking,
			evaluation_previous_goal=self.evaluation_previous_goal,
			memory=self.memory,
			next_goal=self.next_goal,
		)

	@staticmethod
	def type_with_custom_actions(custom_actions: type[ActionModel]) -> type[AgentOutput]:
		"""Extend actions with custom actions"""
		model_ = create_model(
			'AgentOutput',
			__base__=AgentOutput,
			action=(
				list[custom_actions],  # type: ignore
				Field(..., description='List of actions to execute', json_schema_extra={'min_items': 1}),
			),
			__module__=AgentOutput.__module__,
		)
		model_.__doc__ = 'AgentOutput model with custom actions'
		return model_


class StepMetadata(BaseModel):
	"""Metadata for a single step including timing information"""

	step_start_time: float
	step_end_time: float
	step_number: int

	@property
	def duration_seconds(self) -> float:
		"""Calculate step duration in seconds"""
		return self.step_end_time - self.step_start_time


class AgentHistory(BaseModel):
	"""One action/result pair of a step. Immutable once appended."""

	model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

	step_number: int
	action: dict[str, Any] | None
	result: ActionResult
	state: BrowserStateHistory
	model_output: AgentBrain | None = None
	metadata: StepMetadata | None = None
	timestamp: float

	@property
	def action_name(self) -> str | None:
		if not self.action:
			return None
		return next(iter(self.action))

	@field_serializer('state')
	def _serialize_state(self, state: BrowserStateHistory) -> dict[str, Any]:
		return state.to_dict()


class AgentHistoryList(BaseModel):
	"""List of AgentHistory messages, i.e. the history of the agent's actions and thoughts."""

	history: list[AgentHistory]

	def __len__(self) -> int:
		return len(self.history)

	def __str__(self) -> str:
		return f'AgentHistoryList(entries={len(self.history)}, steps={self.number_of_steps()})'

	def __repr__(self) -> str:
		return self.__str__()

	def add_item(self, history_item: AgentHistory) -> None:
		self.history.append(history_item)

	def is_done(self) -> bool:
		"""Check if the agent is done"""
		if self.history:
			return self.history[-1].result.is_done is True
		return False

	def is_successful(self) -> bool | None:
		"""Check if the agent completed successfully - the agent decides in the last step if it was successful or not. None if not done yet."""
		if self.history and self.history[-1].result.is_done:
			return self.history[-1].result.success
		return None

	def final_result(self) -> str | None:
		"""Final result from history"""
		if self.history and self.history[-1].result.extracted_content:
			return self.history[-1].result.extracted_content
		return None

	def errors(self) -> list[str | None]:
		"""Error of each step, None for steps without errors"""
		errors_by_step: dict[int, str | None] = {}
		for item in self.history:
			errors_by_step.setdefault(item.step_number, None)
			if item.result.error and errors_by_step[item.step_number] is None:
				errors_by_step[item.step_number] = item.result.error
		return list(errors_by_step.values())

	def has_errors(self) -> bool:
		return any(error is not None for error in self.errors())

	def urls(self) -> list[str]:
		"""Get all unique URLs from history"""
		return list(dict.fromkeys(item.state.url for item in self.history if item.state.url))

	def action_names(self) -> list[str]:
		return [name for item in self.history if (name := item.action_name)]

	def number_of_steps(self) -> int:
		return len({item.step_number for item in self.history})

	def total_duration_seconds(self) -> float:
		"""Get total duration of all steps in seconds"""
		durations = {item.step_number: item.metadata.duration_seconds for item in self.history if item.metadata}
		return sum(durations.values())

	def save_to_file(self, filepath: str | Path) -> None:
		"""Save history to JSON file"""
		path = Path(filepath)
		path.parent.mkdir(parents=True, exist_ok=True)
		path.write_text(json.dumps(self.model_dump(), indent=2, default=str), encoding='utf-8')


class AgentError(Exception):
	"""Raised when the run cannot continue, and formats step errors for the model"""

	VALIDATION_ERROR = 'Invalid model output format. Please follow the correct schema.'
	RATE_LIMIT_ERROR = 'Rate limit reached. Waiting before retry.'
	NO_VALID_ACTION = 'No valid action found'

	@staticmethod
	def format_error(error: Exception, include_trace: bool = False) -> str:
		"""Format error message based on error type and optionally include trace"""
		if isinstance(error, ValidationError):
			return f'{AgentError.VALIDATION_ERROR}\nDetails: {str(error)}'
		if isinstance(error, ModelRateLimitError):
			return AgentError.RATE_LIMIT_ERROR
		if isinstance(error, ModelProviderError):
			return f'Model provider error ({error.status_code}): {error.message}'
		if include_trace:
			return f'{str(error)}\nStacktrace:\n{traceback.format_exc()}'
		return f'{type(error).__name__}: {str(error)}'


AgentState.model_rebuild()
