import logging

from page_agent.config import CONFIG
from page_agent.logging_config import setup_logging

# PAGE_AGENT_SETUP_LOGGING=false leaves logging to the host application
if CONFIG.PAGE_AGENT_SETUP_LOGGING:
	logger = setup_logging()
else:
	logger = logging.getLogger('page_agent')

from page_agent.agent.service import Agent  # noqa: E402
from page_agent.agent.views import ActionResult, AgentHistoryList, AgentSettings, AgentStatus  # noqa: E402
from page_agent.browser import BrowserProfile, BrowserSession  # noqa: E402
from page_agent.controller.service import Controller  # noqa: E402
from page_agent.dom.service import DomService  # noqa: E402
from page_agent.filesystem.file_system import FileSystem  # noqa: E402

__all__ = [
	'Agent',
	'AgentSettings',
	'AgentStatus',
	'AgentHistoryList',
	'ActionResult',
	'BrowserSession',
	'BrowserProfile',
	'Controller',
	'DomService',
	'FileSystem',
]
