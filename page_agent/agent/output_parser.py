"""
Turns untrusted model text into a validated AgentOutput.

Model output arrives wrapped in code fences, with trailing commas, single quotes or doubled
braces, and with actions in several shapes. Everything is repaired and normalised here before
pydantic validation against the page's action model.
"""

import json
import logging
import re
from typing import Any

from pydantic import BaseModel, ValidationError

from page_agent.agent.views import AgentError, AgentOutput
from page_agent.controller.registry.views import ActionModel

logger = logging.getLogger(__name__)

ACTION_ALIASES = {
	'click': 'click_element_by_index',
	'type': 'input_text',
	'navigate': 'go_to_url',
	'scroll_down': 'scroll',
	'scroll_up': 'scroll',
}

PARAM_ALIASES = {
	'element_index': 'index',
	'idx': 'index',
	'elementIndex': 'index',
	'link': 'url',
	'href': 'url',
	'value': 'text',
}

BRAIN_FIELDS = ('thinking', 'evaluation_previous_goal', 'memory', 'next_goal')

_FENCE_RE = re.compile(r'```[ \t]*(?:json)?[ \t]*\n?(.*?)\n?[ \t]*```', re.DOTALL | re.IGNORECASE)


def _try_parse(text: str) -> tuple[bool, Any]:
	try:
		return True, json.loads(text)
	except (json.JSONDecodeError, TypeError):
		return False, None


def _find_string_end(text: str, start: int, quote: str = '"') -> int:
	i = start + 1
	while i < len(text):
		if text[i] == '\\':
			i += 2
			continue
		if text[i] == quote:
			return i
		i += 1
	return -1


def _slice_first_json_like(text: str) -> str | None:
	"""Cut the first balanced {...} or [...] out of free text, closing it if it is unbalanced"""
	starts = [i for i in (text.find('{'), text.find('[')) if i != -1]
	if not starts:
		return None
	start = min(starts)
	open_char = text[start]
	close_char = '}' if open_char == '{' else ']'

	depth = 0
	i = start
	while i < len(text):
		char = text[i]
		if char == '"':
			end = _find_string_end(text, i)
			if end == -1:
				break
			i = end + 1
			continue
		if char == open_char:
			depth += 1
		elif char == close_char:
			depth -= 1
			if depth == 0:
				return text[start : i + 1]
		i += 1
	return text[start:] + close_char


def _repair_outside_strings(text: str) -> str:
	"""Rewrite single quoted strings as JSON strings and drop trailing commas.

	Double quoted strings are copied through untouched, so quotes, colons and commas inside them
	never trigger a repair.
	"""
	out: list[str] = []
	i = 0
	while i < len(text):
		char = text[i]
		if char in ('"', "'"):
			end = _find_string_end(text, i, quote=char)
			if end == -1:
				out.append(text[i:])
				break
			if char == '"':
				out.append(text[i : end + 1])
			else:
				inner = text[i + 1 : end].replace("\\'", "'")
				out.append('"' + re.sub(r'(?<!\\)"', r'\\"', inner) + '"')
			i = end + 1
			continue
		if char == ',':
			j = i + 1
			while j < len(text) and text[j].isspace():
				j += 1
			if j < len(text) and text[j] in '}]':
				i += 1
				continue
		out.append(char)
		i += 1
	return ''.join(out)


def _minor_repairs(text: str) -> str:
	repaired = text.strip()

	# doubled braces from templated prompts
	if repaired.startswith('{{') and repaired.endswith('}}'):
		repaired = repaired[1:-1]
	if repaired.startswith('[[') and repaired.endswith(']]'):
		repaired = repaired[1:-1]

	repaired = repaired.replace('\\`', '`')
	return _repair_outside_strings(repaired)


def parse_json(raw: str) -> Any:
	"""Best-effort JSON extraction from model text.

	Raises:
		ValueError: if nothing JSON-like could be recovered
	"""
	ok, value = _try_parse(raw)
	if ok:
		return value

	candidates = []
	fence = _FENCE_RE.search(raw)
	if fence:
		candidates.append(fence.group(1).strip())
	sliced = _slice_first_json_like(raw)
	if sliced:
		candidates.append(sliced)
	candidates.append(raw)

	for candidate in candidates:
		for attempt in (candidate, _minor_repairs(candidate)):
			ok, value = _try_parse(attempt)
			if ok:
				return value
		# repairs can expose a cleaner inner object
		inner = _slice_first_json_like(_minor_repairs(candidate))
		if inner:
			ok, value = _try_parse(inner)
			if ok:
				return value

	raise ValueError(f'Unable to parse model JSON output: {raw[:200]}')


def _split_action_item(item: Any) -> tuple[str, dict[str, Any]] | None:
	if not isinstance(item, dict) or not item:
		return None

	# flat: {"action": "click", "index": 0} or {"name": "click", "params": {...}}
	for name_key in ('action', 'name', 'type', 'tool'):
		name = item.get(name_key)
		if isinstance(name, str):
			for params_key in ('params', 'parameters', 'args', 'arguments'):
				if isinstance(item.get(params_key), dict):
					return name, dict(item[params_key])
			return name, {k: v for k, v in item.items() if k != name_key}

	# keyed: {"click": {"index": 0}}
	set_items = [(key, value) for key, value in item.items() if value is not None]
	if len(set_items) != 1:
		logger.warning(f'Skipping ambiguous action entry with keys {list(item.keys())}')
		return None
	name, params = set_items[0]
	if params is True or params == {}:
		params = {}
	if not isinstance(params, dict):
		logger.warning(f'Skipping action {name} with non-object params {params!r}')
		return None
	return name, dict(params)


def extract_action_list(data: Any) -> list[tuple[str, dict[str, Any]]]:
	"""Pull (name, params) pairs out of any of the accepted decision shapes"""
	if isinstance(data, dict):
		for key in ('action', 'actions'):
			if key in data and not isinstance(data[key], str):
				data = data[key]
				break
	if isinstance(data, dict):
		data = [data]
	if not isinstance(data, list):
		return []

	actions = []
	for item in data:
		split = _split_action_item(item)
		if split is not None:
			actions.append(split)
	return actions


def normalize_actions(
	raw_actions: list[tuple[str, dict[str, Any]]],
	param_models: dict[str, type[BaseModel]],
	max_actions: int,
) -> list[dict[str, dict[str, Any]]]:
	"""Apply action and parameter aliases, drop unknown actions and cap the batch"""
	normalized = []
	for original_name, params in raw_actions:
		name = original_name if original_name in param_models else ACTION_ALIASES.get(original_name, original_name)
		if name not in param_models:
			logger.warning(f'Dropping unknown action {original_name!r}')
			continue

		fields = param_models[name].model_fields
		for alias, target in PARAM_ALIASES.items():
			if alias in params and alias not in fields and target in fields and target not in params:
				params[target] = params.pop(alias)

		if original_name in ('scroll_down', 'scroll_up') and 'down' in fields and 'down' not in params:
			params['down'] = original_name == 'scroll_down'

		normalized.append({name: params})

	if len(normalized) > max_actions:
		logger.warning(f'Model returned {len(normalized)} actions, keeping the first {max_actions}')
		normalized = normalized[:max_actions]
	return normalized


def parse_agent_output(
	raw: str,
	action_model: type[ActionModel],
	param_models: dict[str, type[BaseModel]],
	max_actions: int,
) -> AgentOutput:
	"""Parse, repair and validate a decision.

	Raises:
		ValueError: no valid action survived, the caller falls back to a safe action
	"""
	data = parse_json(raw)
	brain: dict[str, Any] = {}
	if isinstance(data, dict):
		current_state = data.get('current_state')
		source = current_state if isinstance(current_state, dict) else data
		brain = {key: str(source[key]) for key in BRAIN_FIELDS if source.get(key) is not None}

	actions = normalize_actions(extract_action_list(data), param_models, max_actions)
	if not actions:
		raise ValueError(AgentError.NO_VALID_ACTION)

	output_model = AgentOutput.type_with_custom_actions(action_model)
	try:
		return output_model.model_validate({**brain, 'action': actions})
	except ValidationError as e:
		logger.warning(f'Decision failed validation, keeping only the valid actions: {e.error_count()} errors')

	valid_actions = []
	for action in actions:
		try:
			valid_actions.append(action_model.model_validate(action))
		except ValidationError as e:
			logger.warning(f'Dropping invalid action {action}: {e.errors()[0]["msg"]}')
	if not valid_actions:
		raise ValueError(AgentError.NO_VALID_ACTION)
	return output_model(**brain, action=valid_actions)
