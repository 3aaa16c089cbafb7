from page_agent.agent.services.logger import AgentLogger

__all__ = ['AgentLogger']
