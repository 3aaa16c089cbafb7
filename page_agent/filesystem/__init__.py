from page_agent.filesystem.file_system import FileSystem

__all__ = ['FileSystem']
