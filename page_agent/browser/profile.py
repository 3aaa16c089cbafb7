from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from page_agent.config import CONFIG

CHROME_DOCKER_ARGS = [
	'--no-sandbox',
	'--disable-gpu-sandbox',
	'--disable-setuid-sandbox',
	'--disable-dev-shm-usage',
	'--no-xshm',
	'--no-zygote',
]

CHROME_DEFAULT_ARGS = [
	'--disable-blink-features=AutomationControlled',
	'--disable-infobars',
	'--no-first-run',
	'--no-default-browser-check',
]


class ViewportSize(BaseModel):
	width: int = Field(default=1280, ge=0)
	height: int = Field(default=1100, ge=0)


class BrowserProfile(BaseModel):
	"""Settings bundle for a browser session. Every field is optional."""

	model_config = ConfigDict(extra='ignore', validate_assignment=True, revalidate_instances='always')

	# launch
	headless: bool = Field(default_factory=lambda: CONFIG.PAGE_AGENT_HEADLESS)
	channel: str | None = None
	executable_path: str | Path | None = None
	args: list[str] = Field(default_factory=list)
	user_agent: str | None = None
	viewport: ViewportSize = Field(default_factory=ViewportSize)

	# navigation policy
	allowed_domains: list[str] | None = Field(
		default=None,
		description='List of allowed domains for navigation e.g. ["*.google.com", "https://example.com", "chrome-extension://*"]',
	)

	# timing, all in seconds unless noted
	minimum_wait_page_load_time: float = Field(default=0.25, ge=0)
	wait_for_network_idle_page_load_time: float = Field(default=0.5, ge=0)
	maximum_wait_page_load_time: float = Field(default=5.0, ge=0)
	navigation_timeout: float = Field(default=30.0, gt=0)
	action_timeout: float = Field(default=5.0, gt=0)
	typing_delay_ms: int = Field(default=20, ge=0)
	wait_between_actions: float = Field(default=0.5, ge=0)
	health_check_timeout: float = Field(default=2.0, gt=0)

	# snapshot
	highlight_elements: bool = True
	viewport_expansion: int = 500
	include_hidden_elements: bool = False
	max_text_length: int = Field(default=100, ge=1)
	dom_build_timeout: float = Field(default=10.0, gt=0)

	# lifecycle and artifacts
	keep_alive: bool | None = None
	accept_downloads: bool = True
	downloads_path: str | Path | None = Field(default_factory=lambda: CONFIG.PAGE_AGENT_DOWNLOADS_DIR)
	traces_dir: str | Path | None = None

	@field_validator('allowed_domains')
	@classmethod
	def _strip_domains(cls, value: list[str] | None) -> list[str] | None:
		if value is None:
			return None
		return [domain.strip() for domain in value if domain.strip()]

	def get_args(self) -> list[str]:
		args = [*CHROME_DEFAULT_ARGS, *(CHROME_DOCKER_ARGS if CONFIG.IN_DOCKER else []), *self.args]
		# keep the first occurrence of each flag
		return list(dict.fromkeys(args))

	def kwargs_for_launch(self) -> dict[str, Any]:
		kwargs: dict[str, Any] = {'headless': self.headless, 'args': self.get_args()}
		if self.channel:
			kwargs['channel'] = self.channel
		if self.executable_path:
			kwargs['executable_path'] = str(self.executable_path)
		return kwargs

	def kwargs_for_new_context(self) -> dict[str, Any]:
		kwargs: dict[str, Any] = {
			'viewport': self.viewport.model_dump(),
			'accept_downloads': self.accept_downloads,
		}
		if self.user_agent:
			kwargs['user_agent'] = self.user_agent
		return kwargs
