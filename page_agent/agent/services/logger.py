"""
Agent logging service for structured logging of agent execution.

Step context, action summaries and completion stats all go through the agent's instance logger.
"""

import logging
import time
from typing import TYPE_CHECKING

from page_agent.agent.views import ActionResult, AgentOutput

if TYPE_CHECKING:
	from page_agent.agent.service import Agent
	from page_agent.browser.views import DomSnapshot


class AgentLogger:
	"""Centralized logging service for agent execution"""

	def __init__(self, agent: 'Agent'):
		self.agent = agent

	def log_agent_run(self) -> None:
		"""Log the agent run start"""
		self.agent.logger.info(f'🚀 Starting task: {self.agent.task}')

	def log_step_context(self, snapshot: 'DomSnapshot | None') -> None:
		"""Log step context information"""
		url = snapshot.url if snapshot else ''
		url_short = url[:50] + '...' if len(url) > 50 else url
		interactive_count = len(snapshot.selector_map) if snapshot else 0
		self.agent.logger.info(
			f'📍 Step {self.agent.state.n_steps}: Evaluating page with {interactive_count} interactive elements on: {url_short}'
		)

	@staticmethod
	def _summarize_params(action_params: dict) -> str:
		def preview(value: object) -> str:
			text = str(value)
			return text if len(text) <= 30 else text[:30] + '...'

		parts = []
		for key, value in action_params.items():
			if key == 'index':
				parts.append(f'#{value}')
			elif key in ('text', 'url') and isinstance(value, str):
				parts.append(f'{key}="{preview(value)}"')
			elif isinstance(value, (str, int, bool, float)):
				parts.append(f'{key}={preview(value)}')
		return f'({", ".join(parts)})' if parts else ''

	def log_next_action_summary(self, parsed: AgentOutput) -> None:
		"""Log a summary of the next action(s)"""
		if not parsed.action:
			return

		action_details = []
		for action in parsed.action:
			action_name = action.get_name() or 'unknown'
			action_details.append(f'{action_name}{self._summarize_params(action.get_params())}')

		if len(action_details) == 1:
			self.agent.logger.info(f'☝️ Decided next action: {action_details[0]}')
		else:
			summary_lines = [f'✌️ Decided next {len(action_details)} multi-actions:']
			for i, detail in enumerate(action_details):
				summary_lines.append(f'          {i + 1}. {detail}')
			self.agent.logger.info('\n'.join(summary_lines))

	def log_model_response(self, parsed: AgentOutput) -> None:
		if not self.agent.logger.isEnabledFor(logging.DEBUG):
			return
		evaluation = parsed.evaluation_previous_goal.lower()
		if 'success' in evaluation:
			emoji = '👍'
		elif 'fail' in evaluation:
			emoji = '⚠️'
		else:
			emoji = '❔'
		if parsed.thinking:
			self.agent.logger.debug(f'💡 Thinking:\n{parsed.thinking}')
		self.agent.logger.debug(f'{emoji} Eval: {parsed.evaluation_previous_goal}')
		self.agent.logger.debug(f'🧠 Memory: {parsed.memory}')
		self.agent.logger.debug(f'🎯 Next goal: {parsed.next_goal}')

	def log_step_completion_summary(self, step_start_time: float, result: list[ActionResult]) -> None:
		"""Log the action count and duration of the step, with failures counted separately"""
		if not result:
			return

		failed = sum(1 for action_result in result if action_result.error)
		outcome = f'✅ {len(result) - failed}'
		if failed:
			outcome += f' | ❌ {failed}'
		self.agent.logger.info(
			f'📍 Step {self.agent.state.n_steps}: Ran {len(result)} actions in {time.time() - step_start_time:.2f}s: {outcome}'
		)

	def log_run_summary(self) -> None:
		history = self.agent.state.history
		if history.is_done():
			if history.is_successful():
				self.agent.logger.info('✅ Task completed successfully')
			else:
				self.agent.logger.info('❌ Task completed without success')
		self.agent.logger.info(
			f'🏁 Run finished with status {self.agent.state.status.value} after {history.number_of_steps()} steps '
			f'({history.total_duration_seconds():.1f}s of step time)'
		)
