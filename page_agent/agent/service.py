import asyncio
import inspect
import json
import logging
import os
import tempfile
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Generic, TypeVar

from bubus import BaseEvent, EventBus
from dotenv import load_dotenv
from pydantic import BaseModel
from uuid_extensions import uuid7str

from page_agent.agent.events import AgentRunFinishedEvent, AgentStepEvent
from page_agent.agent.message_manager.service import MessageManager
from page_agent.agent.output_parser import parse_agent_output
from page_agent.agent.prompts import SystemPrompt
from page_agent.agent.services.logger import AgentLogger
from page_agent.agent.views import (
	ActionResult,
	AgentError,
	AgentHistory,
	AgentHistoryList,
	AgentOutput,
	AgentSettings,
	AgentState,
	AgentStatus,
	AgentStepInfo,
	StepMetadata,
)
from page_agent.browser.profile import BrowserProfile
from page_agent.browser.session import BrowserSession
from page_agent.browser.views import BrowserClosedError, BrowserStateHistory, DomSnapshot
from page_agent.controller.registry.views import PAGE_SIGNATURE_KEY, ActionModel
from page_agent.controller.service import Controller
from page_agent.filesystem.file_system import FileSystem
from page_agent.llm.base import BaseChatModel, exponential_backoff_retry
from page_agent.llm.exceptions import ModelRateLimitError
from page_agent.llm.messages import BaseMessage
from page_agent.utils import time_execution_async, time_execution_sync

load_dotenv()

logger = logging.getLogger(__name__)

Context = TypeVar('Context')

AgentObserver = Callable[..., Awaitable[None] | None]
ActionOutcome = tuple[ActionModel | None, ActionResult]

OBSERVER_EVENTS = ('on_step_start', 'on_step_end', 'on_model_response')

# taken instead of the model's decision when it is missing or unusable
FALLBACK_ACTION_NAME = 'screenshot'
PAUSE_POLL_INTERVAL = 0.2


class Agent(Generic[Context]):
	"""Runs the observe, decide, act loop for one task against one browser session."""

	@time_execution_sync('--init')
	def __init__(
		self,
		task: str,
		llm: BaseChatModel,
		# Optional parameters
		browser_session: BrowserSession | None = None,
		browser_profile: BrowserProfile | None = None,
		controller: Controller[Context] | None = None,
		sensitive_data: dict[str, str | dict[str, str]] | None = None,
		settings: AgentSettings | None = None,
		output_model: type[BaseModel] | None = None,
		override_system_message: str | None = None,
		extend_system_message: str | None = None,
		file_system_path: str | Path | None = None,
		# Observers, each a single callable or a list of them
		on_step_start: AgentObserver | list[AgentObserver] | None = None,
		on_step_end: AgentObserver | list[AgentObserver] | None = None,
		on_model_response: AgentObserver | list[AgentObserver] | None = None,
		injected_agent_state: AgentState | None = None,
		context: Context | None = None,
		task_id: str | None = None,
		**kwargs: Any,
	):
		"""Extra keyword arguments are AgentSettings fields (use_vision=False, max_failures=5, ...)"""
		self.id = task_id or uuid7str()
		self.task = task
		self.llm = llm
		self.settings = settings.model_copy(update=kwargs) if settings else AgentSettings(**kwargs)
		if self.settings.page_extraction_llm is None:
			self.settings.page_extraction_llm = llm
		if self.settings.available_file_paths is None:
			self.settings.available_file_paths = []

		self.state = injected_agent_state or AgentState()
		self.state.loop_detector.window_size = self.settings.loop_detection_window
		self.sensitive_data = sensitive_data
		self.context = context

		self.controller = controller or Controller(output_model=output_model)

		# a session handed in by the caller is left running on close()
		self._owns_browser_session = browser_session is None
		self.browser_session = browser_session or BrowserSession(browser_profile=browser_profile)
		self.browser_session.include_attributes = self.settings.include_attributes

		if file_system_path is None:
			file_system_path = os.path.join(tempfile.gettempdir(), f'page_agent_{self.id}')
		self.file_system_path = str(file_system_path)
		self.file_system = FileSystem(self.file_system_path)

		self._observers: dict[str, list[AgentObserver]] = {event: [] for event in OBSERVER_EVENTS}
		for event, hooks in zip(OBSERVER_EVENTS, (on_step_start, on_step_end, on_model_response)):
			if hooks is None:
				continue
			for hook in hooks if isinstance(hooks, list) else [hooks]:
				self.add_observer(event, hook)

		self._message_manager = MessageManager(
			task=task,
			system_message=SystemPrompt(
				action_description=self.controller.registry.get_prompt_description(),
				max_actions_per_step=self.settings.max_actions_per_step,
				override_system_message=override_system_message,
				extend_system_message=extend_system_message,
			).get_system_message(),
			file_system=self.file_system,
			sensitive_data=sensitive_data,
			max_history_items=self.settings.max_history_items,
			max_state_chars=self.settings.max_state_chars,
		)

		self.agent_logger = AgentLogger(self)
		# created on the first run, bubus needs a running event loop
		self.eventbus: EventBus | None = None
		self._last_recorded_step: int | None = None
		self._last_known_downloads: list[str] = []
		self._logger: logging.Logger | None = None

		self.logger.info(f'🧠 Starting an agent with model={getattr(llm, "model", type(llm).__name__)}, vision={self.settings.use_vision}')

	@property
	def logger(self) -> logging.Logger:
		"""Get instance-specific logger with task ID in the name"""
		if self._logger is None:
			self._logger = logging.getLogger(f'page_agent.AgentΔ{self.id[-4:]}')
		return self._logger

	@property
	def message_manager(self) -> MessageManager:
		return self._message_manager

	def add_observer(self, event: str, hook: AgentObserver) -> None:
		"""Subscribe `hook` to one of on_step_start / on_step_end / on_model_response. Sync or async."""
		if event not in self._observers:
			raise ValueError(f'Unknown observer event {event!r}, expected one of {", ".join(OBSERVER_EVENTS)}')
		self._observers[event].append(hook)

	async def _notify(self, event: str, *args: Any) -> None:
		for hook in self._observers[event]:
			try:
				result = hook(*args)
				if inspect.isawaitable(result):
					await result
			except Exception as e:
				self.logger.warning(f'⚠️ {event} observer {getattr(hook, "__name__", repr(hook))} failed: {type(e).__name__}: {e}')

	def _dispatch(self, event: BaseEvent) -> None:
		if self.eventbus is not None:
			self.eventbus.dispatch(event)

	# --- run control ---

	def pause(self) -> None:
		"""Pause the agent before its next step"""
		if self.state.status != AgentStatus.RUNNING:
			self.logger.debug(f'Agent is {self.state.status.value}, nothing to pause')
			return
		self.state.status = AgentStatus.PAUSED
		self.logger.info('🔄 Agent paused. Call agent.resume() to continue execution.')

	def resume(self) -> None:
		if not self.state.paused:
			self.logger.debug('Agent is not paused')
			return
		self.state.status = AgentStatus.RUNNING
		self.logger.info('▶️ Agent resumed')

	def stop(self) -> None:
		"""Stop the agent. In-flight work finishes, the loop exits at the next check."""
		self.state.status = AgentStatus.STOPPED
		self.logger.info('🛑 Agent stopped')

	async def _wait_while_paused(self) -> None:
		while self.state.paused:
			await asyncio.sleep(PAUSE_POLL_INTERVAL)

	# --- main loop ---

	@time_execution_async('--run')
	async def run(self, max_steps: int = 100) -> AgentHistoryList:
		"""
		Execute the task with maximum number of steps.

		Returns the history accumulated so far, also when the run is stopped, runs out of steps or
		loses the browser.

		Raises:
			AgentError: when called while already running, or when the failure threshold is reached
				with recover_from_failures disabled (after the run has been finalised)
		"""
		if self.state.status in (AgentStatus.RUNNING, AgentStatus.PAUSED):
			raise AgentError('Agent is already running')
		self.state.status = AgentStatus.RUNNING

		if self.eventbus is None:
			self.eventbus = EventBus(name=f'Agent_{self.id[-4:]}')

		self.agent_logger.log_agent_run()
		fatal_error: AgentError | None = None
		try:
			await self.browser_session.start()

			while self.state.n_steps <= max_steps:
				if self.state.stopped or not self.browser_session.is_connected():
					break
				await self._wait_while_paused()
				if self.state.stopped:
					break

				step_info = AgentStepInfo(step_number=self.state.n_steps, max_steps=max_steps)
				await self._notify('on_step_start', self)
				await self.step(step_info)
				await self._notify('on_step_end', self)
				self.state.n_steps += 1

				if self.state.history.is_done():
					self.logger.info(f'🎯 Task completed in {step_info.step_number} steps')
					break

				if self.settings.step_delay and self.state.n_steps <= max_steps:
					await asyncio.sleep(self.settings.step_delay)

		except BrowserClosedError as e:
			self.logger.warning(f'🔌 Browser is gone, ending the run with the history so far: {e}')
		except AgentError as e:
			fatal_error = e
		finally:
			self._resolve_final_status(max_steps)
			self._finalize_run()

		if fatal_error is not None:
			raise fatal_error
		return self.state.history

	def _resolve_final_status(self, max_steps: int) -> None:
		if self.state.history.is_done():
			self.state.status = AgentStatus.COMPLETED
		elif self.state.stopped:
			return
		elif self.state.n_steps > max_steps:
			self.logger.warning(f'⏰ Max steps ({max_steps}) reached without task completion')
			self.state.status = AgentStatus.MAX_STEPS_REACHED
		else:
			self.state.status = AgentStatus.STOPPED

	def _finalize_run(self) -> None:
		history = self.state.history
		self.agent_logger.log_run_summary()
		self._dispatch(
			AgentRunFinishedEvent(
				agent_id=self.id,
				status=self.state.status.value,
				steps=history.number_of_steps(),
				success=history.is_successful(),
				final_result=history.final_result(),
			)
		)

	@time_execution_async('--step')
	async def step(self, step_info: AgentStepInfo) -> None:
		"""Observe, decide and act once. Only BrowserClosedError and AgentError escape."""
		step_start_time = time.time()
		snapshot: DomSnapshot | None = None
		model_output: AgentOutput | None = None
		outcomes: list[ActionOutcome] = []
		step_error: str | None = None

		try:
			snapshot = await self.browser_session.get_snapshot(
				force_refresh=True, include_screenshot=self.settings.use_vision
			)
			self.agent_logger.log_step_context(snapshot)
			self._observe_for_loops(snapshot)
			page = await self.browser_session.get_current_page()

			model_output, step_error = await self._decide(snapshot, page, step_info, use_vision=self.settings.use_vision)
			outcomes = await self.multi_act(model_output.action, before_signature=snapshot.signature)
			if step_error is None:
				self._record_actions_for_loops(model_output)
		except BrowserClosedError:
			raise
		except Exception as e:
			step_error = AgentError.format_error(e, include_trace=self.logger.isEnabledFor(logging.DEBUG))
			self.logger.error(f'❌ Step {step_info.step_number} failed: {step_error}')

		if step_error is not None:
			# the step itself went wrong, not one of its actions
			outcomes = [(None, ActionResult(error=step_error)), *outcomes]

		decided = model_output if step_error is None else None
		step_failed = self._record_outcomes(step_info.step_number, step_start_time, snapshot, decided, outcomes)

		if step_failed:
			self.state.consecutive_failures += 1
			self.logger.error(f'❌ Result failed {self.state.consecutive_failures}/{self.settings.max_failures} times')
		else:
			self.state.consecutive_failures = 0

		if self.state.consecutive_failures >= self.settings.max_failures:
			if not self.settings.recover_from_failures:
				raise AgentError(f'Stopping after {self.state.consecutive_failures} consecutive failures')
			await self._recover(step_info)

		self._dispatch(
			AgentStepEvent(
				agent_id=self.id,
				step=step_info.step_number,
				actions=[action.get_name() or 'unknown' for action, _ in outcomes if action is not None],
				errors=sum(1 for _, result in outcomes if result.error),
				url=snapshot.url if snapshot else '',
			)
		)

	async def _recover(self, step_info: AgentStepInfo) -> None:
		"""Screenshot, re-observe and run exactly one corrective action. Resets the failure counter either way."""
		failures = self.state.consecutive_failures
		self.state.recoveries += 1
		self.logger.warning(f'🩹 {failures} consecutive failures, asking for a single corrective action')

		start_time = time.time()
		snapshot: DomSnapshot | None = None
		model_output: AgentOutput | None = None
		outcomes: list[ActionOutcome] = []
		error: str | None = None
		try:
			screenshot = await self.browser_session.take_screenshot()
			snapshot = await self.browser_session.get_snapshot(force_refresh=True)
			if screenshot:
				snapshot.screenshot = screenshot
			page = await self.browser_session.get_current_page()

			model_output, error = await self._decide(
				snapshot, page, step_info, use_vision=True, recovery_failures=failures, max_actions=1
			)
			if error is None:
				outcomes = await self.multi_act(model_output.action[:1], before_signature=snapshot.signature)
		except BrowserClosedError:
			raise
		except Exception as e:
			error = AgentError.format_error(e)

		if error is not None:
			self.logger.warning(f'🩹 Recovery attempt failed: {error}')
			outcomes = [(None, ActionResult(error=f'Recovery failed: {error}')), *outcomes]

		self._record_outcomes(step_info.step_number, start_time, snapshot, model_output if error is None else None, outcomes)
		self.state.consecutive_failures = 0

	# --- decision ---

	async def _decide(
		self,
		snapshot: DomSnapshot,
		page: Any,
		step_info: AgentStepInfo,
		use_vision: bool,
		recovery_failures: int | None = None,
		max_actions: int | None = None,
	) -> tuple[AgentOutput, str | None]:
		"""Ask the model for the next actions. On any failure returns the fallback decision and the error text."""
		registry = self.controller.registry
		page_actions = registry.get_page_action_description(page)
		self._message_manager.add_state_message(
			snapshot=snapshot,
			model_output=self.state.last_model_output,
			result=self.state.last_result,
			step_info=step_info,
			use_vision=use_vision,
			page_filtered_actions=page_actions or None,
			available_file_paths=self.settings.available_file_paths,
			previous_step_number=self._last_recorded_step,
			recovery_failures=recovery_failures,
		)
		# consumed, the next state message must not repeat them
		self.state.last_model_output = None
		self.state.last_result = None

		include_actions = None
		if step_info.is_last_step() and 'done' in registry.registry.actions:
			# out of steps, the model can only wrap up
			include_actions = ['done']
			self.logger.info('☝️ Last step, only the done action is available')
		action_model = registry.create_action_model(include_actions=include_actions, page=page)
		param_models = {action.name: action.param_model for action in registry.get_available_actions(page, include_actions)}

		try:
			raw = await self._invoke_llm(self._message_manager.get_messages())
			model_output = parse_agent_output(raw, action_model, param_models, max_actions or self.settings.max_actions_per_step)
		except Exception as e:
			error_msg = AgentError.format_error(e)
			self.logger.warning(f'⚠️ No usable decision from the model, taking a {FALLBACK_ACTION_NAME} instead: {error_msg}')
			if isinstance(e, ModelRateLimitError):
				await asyncio.sleep(self.settings.retry_delay)
			return self._fallback_output(action_model), error_msg

		self.agent_logger.log_model_response(model_output)
		self.agent_logger.log_next_action_summary(model_output)
		await self._notify('on_model_response', self, model_output)
		return model_output, None

	async def _invoke_llm(self, input_messages: list[BaseMessage]) -> str:
		async def _call():
			return await asyncio.wait_for(self.llm.ainvoke(input_messages), timeout=self.settings.llm_timeout)

		response = await exponential_backoff_retry(_call)
		completion = response.completion
		if isinstance(completion, BaseModel):
			return completion.model_dump_json()
		if isinstance(completion, (dict, list)):
			return json.dumps(completion)
		return str(completion)

	@staticmethod
	def _fallback_output(action_model: type[ActionModel]) -> AgentOutput:
		output_model = AgentOutput.type_with_custom_actions(action_model)
		actions = []
		if FALLBACK_ACTION_NAME in action_model.model_fields:
			actions.append(action_model.model_validate({FALLBACK_ACTION_NAME: {}}))
		return output_model(evaluation_previous_goal='Unknown', action=actions)

	# --- acting ---

	@time_execution_async('--multi_act')
	async def multi_act(self, actions: list[ActionModel], before_signature: str | None = None) -> list[ActionOutcome]:
		"""Execute the batch in order, abandoning the rest as soon as the page moved underneath it"""
		outcomes: list[ActionOutcome] = []
		registry = self.controller.registry

		cached_snapshot = self.browser_session.cached_snapshot
		cached_selector_map = cached_snapshot.selector_map if cached_snapshot else {}
		cached_path_hashes = {e.hash.branch_path_hash for e in cached_selector_map.values()}
		total = len(actions)
		await self.browser_session.remove_highlights()

		for i, action in enumerate(actions):
			if self.state.stopped:
				break
			action_name = action.get_name() or 'unknown'

			index = action.get_index()
			if index is not None and i != 0:
				notice = await self._check_index_targets(index, i, total, cached_selector_map, cached_path_hashes)
				if notice is not None:
					outcomes.append((None, notice))
					break

			result = await self.controller.act(
				action=action,
				browser_session=self.browser_session,
				page_extraction_llm=self.settings.page_extraction_llm,
				sensitive_data=self.sensitive_data,
				available_file_paths=self.settings.available_file_paths,
				file_system=self.file_system,
				agent_state=self.state,
				context=self.context,
			)
			outcomes.append((action, result))
			self.logger.info(f'☑️ Executed action {i + 1}/{total}: {action_name}{AgentLogger._summarize_params(action.get_params())}')

			if result.is_done or result.error:
				break

			is_last = i == total - 1
			if registry.is_dom_mutating(action_name) or is_last:
				# the registry already measured the page after a DOM-mutating action
				after_signature = (result.metadata or {}).get(PAGE_SIGNATURE_KEY) or await self._safe_change_signature()
				if before_signature is not None and after_signature != before_signature:
					if not is_last:
						msg = f'Page changed after action {i + 1} / {total}, the remaining {total - i - 1} actions were not executed.'
						self.logger.info(msg)
						outcomes.append((None, ActionResult(extracted_content=msg, long_term_memory=msg)))
					break

			if not is_last:
				await asyncio.sleep(self.browser_session.browser_profile.wait_between_actions)

		self._update_available_file_paths()
		return outcomes

	async def _check_index_targets(
		self,
		index: int,
		position: int,
		total: int,
		cached_selector_map: dict,
		cached_path_hashes: set[str],
	) -> ActionResult | None:
		"""Re-observe before a later index action, stop the batch if its target moved or new elements showed up"""
		new_snapshot = await self.browser_session.get_snapshot(force_refresh=True)
		new_selector_map = new_snapshot.selector_map

		orig_target = cached_selector_map.get(index)
		new_target = new_selector_map.get(index)
		orig_target_hash = orig_target.hash.branch_path_hash if orig_target else None
		new_target_hash = new_target.hash.branch_path_hash if new_target else None
		if orig_target_hash != new_target_hash:
			msg = f'Element index changed after action {position} / {total}, because page changed.'
		elif not {e.hash.branch_path_hash for e in new_selector_map.values()}.issubset(cached_path_hashes):
			msg = f'Something new appeared after action {position} / {total}, following actions are NOT executed and should be retried.'
		else:
			return None

		self.logger.info(msg)
		return ActionResult(extracted_content=msg, long_term_memory=msg)

	async def _safe_change_signature(self) -> str | None:
		try:
			return await self.browser_session.change_signature()
		except BrowserClosedError:
			raise
		except Exception as e:
			# unknown counts as changed
			self.logger.debug(f'Failed to compute change signature: {type(e).__name__}: {e}')
			return None

	# --- loop detection ---

	def _observe_for_loops(self, snapshot: DomSnapshot) -> None:
		"""Record the page state and leave a note for the model when it seems to be going in circles"""
		if not self.settings.loop_detection_enabled:
			return
		detector = self.state.loop_detector
		detector.record_page_state(snapshot.url, snapshot.elements_text, len(snapshot.selector_map))
		nudge = detector.get_nudge_message()
		if nudge is None:
			return
		self.logger.info(
			f'🔁 Loop detected (repetition={detector.max_repetition_count}, stagnation={detector.consecutive_stagnant_pages})'
		)
		self._message_manager.add_system_note(nudge)

	def _record_actions_for_loops(self, model_output: AgentOutput) -> None:
		if not self.settings.loop_detection_enabled:
			return
		for action in model_output.action:
			action_name = action.get_name()
			if action_name is not None:
				self.state.loop_detector.record_action(action_name, action.get_params())

	def _update_available_file_paths(self) -> None:
		downloads = list(self.browser_session.downloaded_files)
		if downloads == self._last_known_downloads:
			return
		new_files = [path for path in downloads if path not in (self.settings.available_file_paths or [])]
		self.settings.available_file_paths = [*(self.settings.available_file_paths or []), *new_files]
		self._last_known_downloads = downloads
		if new_files:
			self.logger.info(f'📁 Added {len(new_files)} downloaded files to available_file_paths')

	# --- bookkeeping ---

	def _record_outcomes(
		self,
		step_number: int,
		step_start_time: float,
		snapshot: DomSnapshot | None,
		model_output: AgentOutput | None,
		outcomes: list[ActionOutcome],
	) -> bool:
		"""Append one history entry per action/result pair and remember them for the next prompt. Returns True on failure."""
		step_end_time = time.time()
		metadata = StepMetadata(step_start_time=step_start_time, step_end_time=step_end_time, step_number=step_number)
		brain = model_output.current_state if model_output else None

		for action, result in outcomes:
			interacted_element = None
			index = action.get_index() if action is not None else None
			if snapshot is not None and index is not None and index in snapshot.selector_map:
				interacted_element = snapshot.selector_map[index].descriptor

			self.state.history.add_item(
				AgentHistory(
					step_number=step_number,
					action=action.model_dump(exclude_unset=True) if action is not None else None,
					result=result,
					state=BrowserStateHistory(
						url=snapshot.url if snapshot else '',
						title=snapshot.title if snapshot else '',
						tabs=list(snapshot.tabs) if snapshot else [],
						interacted_element=interacted_element,
					),
					model_output=brain,
					metadata=metadata,
					timestamp=step_end_time,
				)
			)

		results = [result for _, result in outcomes]
		self.state.last_result = results
		self.state.last_model_output = model_output
		self._last_recorded_step = step_number

		self.agent_logger.log_step_completion_summary(step_start_time, results)
		if results and results[-1].is_done:
			self.logger.info(f'📄 Result: {results[-1].extracted_content}')
			for file_path in results[-1].attachments or []:
				self.logger.info(f'👉 {file_path}')

		return not results or any(result.error for result in results)

	def save_history(self, file_path: str | Path | None = None) -> None:
		"""Save the history to a file"""
		self.state.history.save_to_file(file_path or 'AgentHistory.json')

	async def close(self) -> None:
		"""Stop the event bus, and the browser session if the agent created it"""
		try:
			if self.eventbus is not None:
				await self.eventbus.stop(timeout=3.0)
				self.eventbus = None
			if self._owns_browser_session:
				await self.browser_session.stop()
		except Exception as e:
			self.logger.error(f'Error during cleanup: {e}')
