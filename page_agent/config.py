"""Environment-backed configuration. Every property re-reads the environment on access."""

import os
from functools import cache
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _str_to_bool(value: str | None, default: bool = False) -> bool:
	if value is None or value == '':
		return default
	return value.strip().lower() in ('true', '1', 't', 'y', 'yes')


@cache
def is_running_in_docker() -> bool:
	"""Detect if we are running in a docker container, used to pick chromium launch flags"""
	try:
		if Path('/.dockerenv').exists():
			return True
		if 'docker' in Path('/proc/1/cgroup').read_text().lower():
			return True
	except Exception:
		pass
	return False


class Config:
	"""Lazy environment reader, so values can be changed at runtime (e.g. in tests)."""

	@property
	def PAGE_AGENT_LOGGING_LEVEL(self) -> str:
		return os.getenv('PAGE_AGENT_LOGGING_LEVEL', 'info').lower()

	@property
	def PAGE_AGENT_SETUP_LOGGING(self) -> bool:
		return _str_to_bool(os.getenv('PAGE_AGENT_SETUP_LOGGING'), default=True)

	@property
	def PAGE_AGENT_HEADLESS(self) -> bool:
		return _str_to_bool(os.getenv('PAGE_AGENT_HEADLESS'), default=True)

	@property
	def PAGE_AGENT_CONFIG_DIR(self) -> Path:
		path = Path(os.getenv('PAGE_AGENT_CONFIG_DIR', '~/.config/pageagent')).expanduser().resolve()
		return path

	@property
	def PAGE_AGENT_DOWNLOADS_DIR(self) -> Path:
		value = os.getenv('PAGE_AGENT_DOWNLOADS_DIR')
		if value:
			return Path(value).expanduser().resolve()
		return self.PAGE_AGENT_CONFIG_DIR / 'downloads'

	@property
	def IN_DOCKER(self) -> bool:
		return _str_to_bool(os.getenv('IN_DOCKER')) or is_running_in_docker()


CONFIG = Config()
