from __future__ import annotations

import logging
from typing import Literal

from page_agent.agent.message_manager.views import HistoryItem, MessageManagerState
from page_agent.agent.prompts import RECOVERY_PROMPT, AgentMessagePrompt
from page_agent.agent.views import ActionResult, AgentOutput, AgentStepInfo
from page_agent.browser.views import DomSnapshot
from page_agent.filesystem.file_system import FileSystem
from page_agent.llm.messages import BaseMessage, ContentPartTextParam, SystemMessage
from page_agent.utils import match_url_with_domain_pattern, time_execution_sync

logger = logging.getLogger(__name__)


class MessageManager:
	"""Builds the system + state message pair sent to the model on every step.

	Only two messages are ever kept: the system prompt and the latest state message. Everything the
	model should remember across steps is folded into the agent history description instead.
	"""

	def __init__(
		self,
		task: str,
		system_message: SystemMessage,
		file_system: FileSystem | None = None,
		state: MessageManagerState | None = None,
		sensitive_data: dict[str, str | dict[str, str]] | None = None,
		max_history_items: int | None = None,
		max_state_chars: int = 40000,
	):
		self.task = task
		self.state = state or MessageManagerState()
		self.system_prompt = system_message
		self.file_system = file_system
		self.sensitive_data = sensitive_data
		self.sensitive_data_description = ''
		self.max_history_items = max_history_items
		self.max_state_chars = max_state_chars
		self.last_input_messages: list[BaseMessage] = []

		if max_history_items is not None and max_history_items <= 5:
			raise ValueError('max_history_items must be None or greater than 5')

		# Only initialize messages if state is empty
		if not self.state.messages():
			self._add_message_with_type(self.system_prompt, 'system')

	@property
	def agent_history_description(self) -> str:
		"""Build agent history description from list of items, respecting max_history_items limit"""
		items = self.state.history_items
		if self.max_history_items is None or len(items) <= self.max_history_items:
			return '\n'.join(item.render() for item in items)

		omitted_count = len(items) - self.max_history_items
		# first item + omitted marker + most recent (max_history_items - 1) items
		recent_items_count = self.max_history_items - 1

		items_to_include = [items[0].render(), f'<sys>[... {omitted_count} previous steps omitted...]</sys>']
		items_to_include.extend(item.render() for item in items[-recent_items_count:])
		return '\n'.join(items_to_include)

	def add_system_note(self, note: str) -> None:
		self.state.history_items.append(HistoryItem.note(note))

	def _update_agent_history_description(
		self,
		model_output: AgentOutput | None = None,
		result: list[ActionResult] | None = None,
		step_number: int | None = None,
	) -> None:
		"""Fold the outcome of the previous step into the history items"""
		if result is None:
			result = []

		self.state.read_state = ''

		action_results = ''
		result_len = len(result)
		for idx, action_result in enumerate(result):
			if action_result.include_extracted_content_only_once and action_result.extracted_content:
				self.state.read_state += action_result.extracted_content + '\n'

			if action_result.long_term_memory:
				action_results += f'Action {idx + 1}/{result_len}: {action_result.long_term_memory}\n'
			elif action_result.extracted_content and not action_result.include_extracted_content_only_once:
				action_results += f'Action {idx + 1}/{result_len}: {action_result.extracted_content}\n'

			if action_result.error:
				if len(action_result.error) > 200:
					error_text = action_result.error[:100] + '......' + action_result.error[-100:]
				else:
					error_text = action_result.error
				action_results += f'Action {idx + 1}/{result_len}: {error_text}\n'

		if action_results:
			action_results = f'Action Results:\n{action_results}'
		action_results = action_results.strip('\n') if action_results else None

		if model_output is None:
			# the model produced nothing usable, say so once per failed step
			if step_number is not None and step_number > 0:
				error = 'Agent failed to output in the right format.'
				if action_results:
					error += f'\n{action_results}'
				self.state.history_items.append(HistoryItem.failed(step_number, error))
			return

		self.state.history_items.append(
			HistoryItem.from_step(
				step_number,
				model_output.evaluation_previous_goal,
				model_output.memory,
				model_output.next_goal,
				action_results,
			)
		)

	def _get_sensitive_data_description(self, current_page_url: str) -> str:
		sensitive_data = self.sensitive_data
		if not sensitive_data:
			return ''

		placeholders: set[str] = set()
		for key, value in sensitive_data.items():
			if isinstance(value, dict):
				# {domain_pattern: {name: secret}}
				if match_url_with_domain_pattern(current_page_url, key, True):
					placeholders.update(value.keys())
			else:
				placeholders.add(key)

		if placeholders:
			info = f'Here are placeholders for sensitive data:\n{sorted(placeholders)}\n'
			info += 'To use them, write <secret>the placeholder name</secret>'
			return info
		return ''

	@staticmethod
	def _collect_screenshots(snapshot: DomSnapshot, result: list[ActionResult] | None, use_vision: bool) -> list[str]:
		screenshots = []
		# a screenshot action attaches its image to the next message even without vision
		for action_result in result or []:
			if action_result.metadata and action_result.metadata.get('screenshot'):
				screenshots.append(action_result.metadata['screenshot'])
		if use_vision and snapshot.screenshot:
			screenshots.append(snapshot.screenshot)
		return screenshots

	@time_execution_sync('--add_state_message')
	def add_state_message(
		self,
		snapshot: DomSnapshot,
		model_output: AgentOutput | None = None,
		result: list[ActionResult] | None = None,
		step_info: AgentStepInfo | None = None,
		use_vision: bool = True,
		page_filtered_actions: str | None = None,
		available_file_paths: list[str] | None = None,
		previous_step_number: int | None = None,
		recovery_failures: int | None = None,
	) -> None:
		"""Add browser state as human message"""
		self._update_agent_history_description(model_output, result, previous_step_number)
		if self.sensitive_data:
			self.sensitive_data_description = self._get_sensitive_data_description(snapshot.url)

		task = self.task
		if recovery_failures is not None:
			task = f'{task}\n\n{RECOVERY_PROMPT.format(failures=recovery_failures)}'

		screenshots = self._collect_screenshots(snapshot, result, use_vision)
		state_message = AgentMessagePrompt(
			snapshot=snapshot,
			task=task,
			agent_history_description=self.agent_history_description,
			file_system=self.file_system,
			read_state_description=self.state.read_state,
			step_info=step_info,
			page_filtered_actions=page_filtered_actions,
			sensitive_data=self.sensitive_data_description,
			available_file_paths=available_file_paths,
			screenshots=screenshots,
			max_state_chars=self.max_state_chars,
		).get_user_message(use_vision=bool(screenshots))

		self._add_message_with_type(state_message, 'state')

	@time_execution_sync('--get_messages')
	def get_messages(self) -> list[BaseMessage]:
		self.last_input_messages = self.state.messages()
		return self.last_input_messages

	def _add_message_with_type(self, message: BaseMessage, message_type: Literal['system', 'state']) -> None:
		if self.sensitive_data:
			message = self._filter_sensitive_data(message)

		if message_type == 'system':
			self.state.system_message = message
		elif message_type == 'state':
			self.state.state_message = message
		else:
			raise ValueError(f'Invalid message type: {message_type}')

	def _filter_sensitive_data(self, message: BaseMessage) -> BaseMessage:
		"""Replace every secret value in the message with its <secret>name</secret> placeholder"""
		sensitive_values: dict[str, str] = {}
		for key_or_domain, content in (self.sensitive_data or {}).items():
			if isinstance(content, dict):
				for key, val in content.items():
					if val:
						sensitive_values[key] = val
			elif content:
				sensitive_values[key_or_domain] = content

		if not sensitive_values:
			logger.warning('No valid entries found in sensitive_data dictionary')
			return message

		def replace_sensitive(value: str) -> str:
			for key, val in sensitive_values.items():
				value = value.replace(val, f'<secret>{key}</secret>')
			return value

		if isinstance(message.content, str):
			message.content = replace_sensitive(message.content)
		elif isinstance(message.content, list):
			for item in message.content:
				if isinstance(item, ContentPartTextParam):
					item.text = replace_sensitive(item.text)
		return message
