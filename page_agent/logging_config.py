import logging
import sys

from page_agent.config import CONFIG


def addLoggingLevel(levelName: str, levelNum: int, methodName: str | None = None) -> None:
	"""
	Comprehensively adds a new logging level to the `logging` module and the
	currently configured logging class.

	`levelName` becomes an attribute of the `logging` module with the value
	`levelNum`. `methodName` becomes a convenience method for both `logging`
	itself and the class returned by `logging.getLoggerClass()` (usually just
	`logging.Logger`). If `methodName` is not specified, `levelName.lower()` is
	used.

	Example
	-------
	>>> addLoggingLevel('RESULT', 35)
	>>> logging.getLogger(__name__).result('that worked')
	"""
	if not methodName:
		methodName = levelName.lower()

	if hasattr(logging, levelName):
		raise AttributeError(f'{levelName} already defined in logging module')
	if hasattr(logging, methodName):
		raise AttributeError(f'{methodName} already defined in logging module')
	if hasattr(logging.getLoggerClass(), methodName):
		raise AttributeError(f'{methodName} already defined in logger class')

	def logForLevel(self, message, *args, **kwargs):
		if self.isEnabledFor(levelNum):
			self._log(levelNum, message, args, **kwargs)

	def logToRoot(message, *args, **kwargs):
		logging.log(levelNum, message, *args, **kwargs)

	logging.addLevelName(levelNum, levelName)
	setattr(logging, levelName, levelNum)
	setattr(logging.getLoggerClass(), methodName, logForLevel)
	setattr(logging, methodName, logToRoot)


class PageAgentFormatter(logging.Formatter):
	"""Shortens page_agent.* logger names, RESULT lines are printed bare."""

	def format(self, record: logging.LogRecord) -> str:
		if isinstance(record.name, str) and record.name.startswith('page_agent.'):
			# page_agent.agent.service -> agent, page_agent.BrowserSession🆂 1a2b stays as is
			parts = record.name.split('.')
			if len(parts) >= 3:
				record.name = parts[-2]
			elif len(parts) == 2:
				record.name = parts[-1]
		return super().format(record)


_configured = False

THIRD_PARTY_LOGGERS = (
	'asyncio',
	'playwright',
	'bubus',
	'httpx',
	'urllib3',
	'markdownify',
	'charset_normalizer',
)


def setup_logging(stream=None, log_level: str | None = None, force_setup: bool = False) -> logging.Logger:
	"""Setup logging configuration for page_agent.

	Args:
		stream: Output stream for logs (default: sys.stdout).
		log_level: Override log level (default: PAGE_AGENT_LOGGING_LEVEL)
		force_setup: Force reconfiguration even if handlers already exist
	"""
	global _configured

	try:
		addLoggingLevel('RESULT', 35)
	except AttributeError:
		pass  # level already exists

	log_type = (log_level or CONFIG.PAGE_AGENT_LOGGING_LEVEL).lower()

	if _configured and not force_setup:
		return logging.getLogger('page_agent')

	root = logging.getLogger()
	root.handlers = []

	console = logging.StreamHandler(stream or sys.stdout)
	if log_type == 'result':
		console.setLevel('RESULT')
		console.setFormatter(PageAgentFormatter('%(message)s'))
	else:
		console.setFormatter(PageAgentFormatter('%(levelname)-8s [%(name)s] %(message)s'))

	root.addHandler(console)

	level = {
		'result': 35,
		'debug': logging.DEBUG,
		'warning': logging.WARNING,
		'error': logging.ERROR,
	}.get(log_type, logging.INFO)
	root.setLevel(level)

	package_logger = logging.getLogger('page_agent')
	package_logger.propagate = True
	package_logger.setLevel(level)

	for name in THIRD_PARTY_LOGGERS:
		third_party = logging.getLogger(name)
		third_party.setLevel(logging.ERROR)
		third_party.propagate = False

	_configured = True
	package_logger.debug('page_agent logging configured (level=%s)', log_type)
	return package_logger
