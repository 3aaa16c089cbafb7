from datetime import datetime
from typing import TYPE_CHECKING

from page_agent.llm.messages import ContentPartImageParam, ContentPartTextParam, ImageURL, SystemMessage, UserMessage

if TYPE_CHECKING:
	from page_agent.agent.views import AgentStepInfo
	from page_agent.browser.views import DomSnapshot
	from page_agent.filesystem.file_system import FileSystem


SYSTEM_PROMPT_TEMPLATE = """You are a browser automation agent. You operate a live web page step by step to accomplish the task in <user_request>.

<browser_state>
Interactive elements are listed as [index]<tag attribute=value>text />.
Only elements with an [index] can be clicked or typed into. Indices are only valid for the current step:
after the page changes you get a fresh list with new indices.
Indented lines are children of the element above. Lines without an index are plain text.
</browser_state>

<output>
Respond with a single JSON object and nothing else:
{{
  "thinking": "short reasoning about the current state",
  "evaluation_previous_goal": "Success, Failure or Unknown with a one sentence explanation",
  "memory": "what to remember for the next steps",
  "next_goal": "the immediate next goal",
  "action": [{{"action_name": {{"param": "value"}}}}]
}}
You may chain up to {max_actions} actions. If the page changes after an action the remaining ones are skipped.
Call done as the last action once the task is complete, or when it cannot be completed.
</output>

<available_actions>
{actions}
</available_actions>
"""

RECOVERY_PROMPT = (
	'The last {failures} attempts failed. Look carefully at the current page state and the screenshot if one '
	'is attached, then respond with exactly ONE corrective action that gets the task back on track.'
)


class SystemPrompt:
	def __init__(
		self,
		action_description: str,
		max_actions_per_step: int = 10,
		override_system_message: str | None = None,
		extend_system_message: str | None = None,
	):
		self.default_action_description = action_description
		self.max_actions_per_step = max_actions_per_step
		if override_system_message:
			prompt = override_system_message
		else:
			prompt = SYSTEM_PROMPT_TEMPLATE.format(max_actions=self.max_actions_per_step, actions=action_description)

		if extend_system_message:
			prompt += f'\n{extend_system_message}'

		self.system_message = SystemMessage(content=prompt, cache=True)

	def get_system_message(self) -> SystemMessage:
		"""
		Get the system prompt for the agent.

		Returns:
		    SystemMessage: Formatted system prompt
		"""
		return self.system_message


class AgentMessagePrompt:
	def __init__(
		self,
		snapshot: 'DomSnapshot',
		task: str,
		agent_history_description: str,
		file_system: 'FileSystem | None' = None,
		read_state_description: str | None = None,
		step_info: 'AgentStepInfo | None' = None,
		page_filtered_actions: str | None = None,
		sensitive_data: str | None = None,
		available_file_paths: list[str] | None = None,
		screenshots: list[str] | None = None,
		max_state_chars: int = 40000,
	):
		self.snapshot = snapshot
		self.task = task
		self.agent_history_description = agent_history_description
		self.file_system = file_system
		self.read_state_description = read_state_description
		self.step_info = step_info
		self.page_filtered_actions = page_filtered_actions
		self.sensitive_data = sensitive_data
		self.available_file_paths = available_file_paths
		self.screenshots = screenshots or []
		self.max_state_chars = max_state_chars

	def _get_browser_state_description(self) -> str:
		snapshot = self.snapshot
		elements_text = snapshot.render(self.max_state_chars)

		tabs_text = '\n'.join(f'Tab {tab.page_id}: {tab.url} - {tab.title[:30]}' for tab in snapshot.tabs)
		current_tab = next((tab.page_id for tab in snapshot.tabs if tab.url == snapshot.url), None)

		page_info_text = ''
		if snapshot.page_info:
			info = snapshot.page_info
			pages_above = info.pixels_above / info.viewport_height if info.viewport_height else 0
			pages_below = info.pixels_below / info.viewport_height if info.viewport_height else 0
			page_info_text = f'Page info: {pages_above:.1f} pages above, {pages_below:.1f} pages below\n'

		pdf_message = ''
		if snapshot.is_pdf_viewer:
			pdf_message = 'PDF viewer cannot be rendered. Use extract_content to read its text.\n'

		state = f'Current tab: {current_tab}\nAvailable tabs:\n{tabs_text}\n{page_info_text}{pdf_message}'
		state += f'Interactive elements from top layer of the current page inside the viewport:\n{elements_text}'

		if snapshot.browser_errors:
			state += '\n\n<browser_errors>\n' + '\n'.join(snapshot.browser_errors) + '\n</browser_errors>'
		return state

	def _get_agent_state_description(self) -> str:
		if self.step_info:
			step_info_description = f'Step {self.step_info.step_number} of {self.step_info.max_steps} max possible steps\n'
		else:
			step_info_description = ''
		step_info_description += f'Current date and time: {datetime.now().strftime("%Y-%m-%d %H:%M")}'
		if self.step_info and self.step_info.is_last_step():
			step_info_description += (
				'\nThis is your last step. Use only the "done" action now, with success=false if the task is not fully finished.'
			)

		agent_state = f'<user_request>\n{self.task}\n</user_request>\n'
		if self.file_system is not None:
			agent_state += f'<file_system>\n{self.file_system.describe() or "No files yet."}\n</file_system>\n'
			todo_contents = self.file_system.get_todo_contents()
			if todo_contents:
				agent_state += f'<todo_contents>\n{todo_contents}\n</todo_contents>\n'
		if self.sensitive_data:
			agent_state += f'<sensitive_data>\n{self.sensitive_data}\n</sensitive_data>\n'
		agent_state += f'<step_info>\n{step_info_description}\n</step_info>\n'
		if self.available_file_paths:
			agent_state += '<available_file_paths>\n' + '\n'.join(self.available_file_paths) + '\n</available_file_paths>\n'
		return agent_state

	def get_user_message(self, use_vision: bool = True) -> UserMessage:
		state_description = f'<agent_history>\n{self.agent_history_description.strip()}\n</agent_history>\n'
		state_description += f'<agent_state>\n{self._get_agent_state_description().strip()}\n</agent_state>\n'
		state_description += f'<browser_state>\n{self._get_browser_state_description().strip()}\n</browser_state>\n'
		if self.read_state_description and self.read_state_description.strip():
			state_description += f'<read_state>\n{self.read_state_description.strip()}\n</read_state>\n'
		if self.page_filtered_actions:
			state_description += f'<page_specific_actions>\n{self.page_filtered_actions}\n</page_specific_actions>\n'

		if use_vision and self.screenshots:
			content_parts: list[ContentPartTextParam | ContentPartImageParam] = [ContentPartTextParam(text=state_description)]
			for screenshot in self.screenshots:
				content_parts.append(
					ContentPartImageParam(
						image_url=ImageURL(url=f'data:image/png;base64,{screenshot}', media_type='image/png', detail='auto')
					)
				)
			return UserMessage(content=content_parts)

		return UserMessage(content=state_description)
