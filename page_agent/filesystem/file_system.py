# @file purpose: Sandboxed working directory for the agent's file actions

import re
from pathlib import Path

import anyio

INVALID_FILENAME_ERROR_MESSAGE = 'Error: Invalid filename format. Must be alphanumeric with .txt, .md, .json or .csv extension.'
DEFAULT_FILE_SYSTEM_DIR = 'pageagent_agent_data'
FILENAME_PATTERN = re.compile(r'^[a-zA-Z0-9_\-]+\.(txt|md|json|csv)$')

# Total characters of a file shown in describe() and read_file() (split between start and end)
DISPLAY_CHARS = 400
MAX_READ_CHARS = 20000


class FileSystem:
	"""Flat directory of small text files. Names never contain path separators, so nothing escapes the sandbox."""

	def __init__(self, base_dir: str | Path, create_default_files: bool = True):
		self.base_dir = Path(base_dir)
		self.base_dir.mkdir(parents=True, exist_ok=True)
		self.data_dir = self.base_dir / DEFAULT_FILE_SYSTEM_DIR
		self.data_dir.mkdir(parents=True, exist_ok=True)

		if create_default_files:
			for default_file in ('todo.md', 'results.md'):
				path = self.data_dir / default_file
				if not path.exists():
					path.write_text('', encoding='utf-8')

	def get_dir(self) -> Path:
		return self.data_dir

	def _is_valid_filename(self, file_name: str) -> bool:
		"""Check if filename matches the required pattern: name.extension"""
		return bool(FILENAME_PATTERN.match(file_name))

	def _path(self, file_name: str) -> anyio.Path:
		return anyio.Path(self.data_dir / file_name)

	def list_files(self) -> list[str]:
		return sorted(p.name for p in self.data_dir.iterdir() if p.is_file() and self._is_valid_filename(p.name))

	async def read_file(self, file_name: str) -> str:
		if not self._is_valid_filename(file_name):
			return INVALID_FILENAME_ERROR_MESSAGE

		path = self._path(file_name)
		if not await path.exists():
			return f"File '{file_name}' not found."

		try:
			content = await path.read_text(encoding='utf-8')
		except OSError as e:
			return f"Error: Could not read file '{file_name}'. {str(e)}"

		if len(content) > MAX_READ_CHARS:
			omitted = len(content) - MAX_READ_CHARS
			content = content[:MAX_READ_CHARS] + f'\n... {omitted} more characters ...'
		return f'Read from file {file_name}.\n<content>\n{content}\n</content>'

	async def write_file(self, file_name: str, content: str) -> str:
		if not self._is_valid_filename(file_name):
			return INVALID_FILENAME_ERROR_MESSAGE

		try:
			await self._path(file_name).write_text(content, encoding='utf-8')
		except OSError as e:
			return f"Error: Could not write to file '{file_name}'. {str(e)}"
		return f'Data written to {file_name} successfully.'

	async def append_file(self, file_name: str, content: str) -> str:
		if not self._is_valid_filename(file_name):
			return INVALID_FILENAME_ERROR_MESSAGE

		path = self._path(file_name)
		if not await path.exists():
			return f"File '{file_name}' not found."

		try:
			async with await anyio.open_file(path, 'a', encoding='utf-8') as f:
				await f.write(content)
		except OSError as e:
			return f"Error: Could not append to file '{file_name}'. {str(e)}"
		return f'Data appended to {file_name} successfully.'

	async def replace_file_str(self, file_name: str, old_str: str, new_str: str) -> str:
		if not self._is_valid_filename(file_name):
			return INVALID_FILENAME_ERROR_MESSAGE
		if not old_str:
			return 'Error: Cannot replace empty string. Please provide a non-empty string to replace.'

		path = self._path(file_name)
		if not await path.exists():
			return f"File '{file_name}' not found."

		try:
			content = await path.read_text(encoding='utf-8')
			if old_str not in content:
				return f"Error: '{old_str}' not found in {file_name}."
			await path.write_text(content.replace(old_str, new_str), encoding='utf-8')
		except OSError as e:
			return f"Error: Could not replace string in file '{file_name}'. {str(e)}"
		return f'Successfully replaced all occurrences of "{old_str}" with "{new_str}" in file {file_name}'

	def display_file(self, file_name: str) -> str | None:
		if not self._is_valid_filename(file_name):
			return None
		path = self.data_dir / file_name
		if not path.exists():
			return None
		return path.read_text(encoding='utf-8')

	def get_todo_contents(self) -> str:
		return self.display_file('todo.md') or ''

	def describe(self) -> str:
		"""List all files with their content information"""
		description = ''

		for file_name in self.list_files():
			# todo.md goes into its own prompt section
			if file_name == 'todo.md':
				continue

			content = (self.data_dir / file_name).read_text(encoding='utf-8')
			if not content:
				description += f'<file>\n{file_name} - [empty file]\n</file>\n\n'
				continue

			lines = content.splitlines()
			line_count = len(lines)

			if len(content) < int(1.5 * DISPLAY_CHARS):
				description += f'<file>\n{file_name} - {line_count} lines\n<content>\n{content}\n</content>\n</file>\n'
				continue

			half_display_chars = DISPLAY_CHARS // 2
			start_preview = content[:half_display_chars].rsplit('\n', 1)[0]
			end_preview = content[-half_display_chars:].split('\n', 1)[-1]
			middle_line_count = line_count - start_preview.count('\n') - end_preview.count('\n') - 2

			description += f'<file>\n{file_name} - {line_count} lines\n<content>\n{start_preview}\n'
			if middle_line_count > 0:
				description += f'... {middle_line_count} more lines ...\n'
			description += f'{end_preview}\n</content>\n</file>\n'

		return description.strip('\n')
