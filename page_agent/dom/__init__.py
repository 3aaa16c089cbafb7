from page_agent.dom.service import DomBuildOptions, DomService
from page_agent.dom.views import DOMElementNode, DOMState, DOMTextNode, ElementDescriptor, SelectorMap

__all__ = ['DomService', 'DomBuildOptions', 'DOMElementNode', 'DOMTextNode', 'DOMState', 'ElementDescriptor', 'SelectorMap']
