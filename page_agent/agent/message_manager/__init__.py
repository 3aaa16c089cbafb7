from page_agent.agent.message_manager.service import MessageManager
from page_agent.agent.message_manager.views import HistoryItem, MessageManagerState

__all__ = ['MessageManager', 'HistoryItem', 'MessageManagerState']
