"""Scripts evaluated inside the page. The DOM probe walks the live document and returns a flat id -> node map."""

HIGHLIGHT_CONTAINER_ID = 'page-agent-highlight-container'

DOM_TREE_PROBE_JS = """
(args = {}) => {
  const {
    doHighlightElements = true,
    focusHighlightIndex = -1,
    viewportExpansion = 0,
    includeHidden = false,
    maxTextLength = 0,
    stripComments = true,
    stripScripts = true,
  } = args;
  const CONTAINER_ID = '%(container_id)s';

  let highlightIndex = 0;
  let nextId = 0;
  const nodeMap = {};

  const existing = document.getElementById(CONTAINER_ID);
  if (existing) existing.remove();

  const SKIPPED_TAGS = new Set(['head', 'meta', 'link', 'title', 'svg']);
  const SCRIPT_TAGS = new Set(['script', 'style', 'noscript', 'template']);
  const INTERACTIVE_TAGS = new Set([
    'a', 'button', 'input', 'select', 'textarea', 'details', 'summary', 'label', 'option', 'menuitem',
  ]);
  const INTERACTIVE_ROLES = new Set([
    'button', 'link', 'menuitem', 'menuitemradio', 'menuitemcheckbox', 'radio', 'checkbox', 'tab',
    'switch', 'slider', 'spinbutton', 'combobox', 'searchbox', 'textbox', 'listbox', 'option', 'scrollbar',
  ]);

  const addNode = (node) => {
    const id = String(nextId++);
    nodeMap[id] = node;
    return id;
  };

  const getXPath = (element) => {
    const segments = [];
    let current = element;
    while (current && current.nodeType === Node.ELEMENT_NODE) {
      if (current.parentNode instanceof ShadowRoot || current.parentNode instanceof HTMLIFrameElement) break;
      let index = 0;
      let sibling = current.previousSibling;
      while (sibling) {
        if (sibling.nodeType === Node.ELEMENT_NODE && sibling.nodeName === current.nodeName) index++;
        sibling = sibling.previousSibling;
      }
      const tag = current.nodeName.toLowerCase();
      const hasSameTagSiblings = index > 0 || (current.nextElementSibling && Array.from(current.parentNode ? current.parentNode.children : []).filter((el) => el.nodeName === current.nodeName).length > 1);
      segments.unshift(hasSameTagSiblings ? `${tag}[${index + 1}]` : tag);
      current = current.parentNode;
    }
    return segments.join('/');
  };

  const isElementVisible = (element) => {
    if (!(element instanceof Element)) return false;
    const style = window.getComputedStyle(element);
    if (!style || style.display === 'none' || style.visibility === 'hidden' || style.opacity === '0') return false;
    return element.offsetWidth > 0 || element.offsetHeight > 0 || element.getClientRects().length > 0;
  };

  const isInteractiveElement = (element) => {
    const tag = element.tagName.toLowerCase();
    if (element.hasAttribute('disabled') || element.getAttribute('aria-disabled') === 'true') return false;
    if (tag === 'input' && (element.getAttribute('type') || '').toLowerCase() === 'hidden') return false;
    if (INTERACTIVE_TAGS.has(tag)) return true;
    const role = (element.getAttribute('role') || '').toLowerCase();
    if (INTERACTIVE_ROLES.has(role)) return true;
    if (element.isContentEditable || element.getAttribute('contenteditable') === 'true') return true;
    const tabindex = element.getAttribute('tabindex');
    if (tabindex !== null && tabindex !== '-1') return true;
    if (element.hasAttribute('onclick') || typeof element.onclick === 'function') return true;
    const style = window.getComputedStyle(element);
    return style && style.cursor === 'pointer' && !element.closest('a,button');
  };

  const isTopElement = (element) => {
    const rects = element.getClientRects();
    if (!rects || rects.length === 0) return false;
    const rect = rects[0];
    const centerX = rect.left + rect.width / 2;
    const centerY = rect.top + rect.height / 2;
    // elements outside the viewport cannot be hit-tested, treat them as on top
    if (centerX < 0 || centerY < 0 || centerX > window.innerWidth || centerY > window.innerHeight) return true;
    const root = element.getRootNode();
    const topEl = root instanceof ShadowRoot ? root.elementFromPoint(centerX, centerY) : document.elementFromPoint(centerX, centerY);
    if (!topEl) return false;
    let current = topEl;
    while (current && current !== document.documentElement) {
      if (current === element) return true;
      current = current.parentElement;
    }
    return false;
  };

  const isInExpandedViewport = (element) => {
    if (viewportExpansion === -1) return true;
    const rect = element.getBoundingClientRect();
    return !(
      rect.bottom < -viewportExpansion ||
      rect.top > window.innerHeight + viewportExpansion ||
      rect.right < -viewportExpansion ||
      rect.left > window.innerWidth + viewportExpansion
    );
  };

  const highlightElement = (element, index) => {
    if (!doHighlightElements) return;
    if (focusHighlightIndex >= 0 && focusHighlightIndex !== index) return;
    let container = document.getElementById(CONTAINER_ID);
    if (!container) {
      container = document.createElement('div');
      container.id = CONTAINER_ID;
      container.style.position = 'fixed';
      container.style.pointerEvents = 'none';
      container.style.top = '0';
      container.style.left = '0';
      container.style.width = '100%%';
      container.style.height = '100%%';
      container.style.zIndex = '2147483647';
      document.body.appendChild(container);
    }
    const colors = ['#FF0000', '#00FF00', '#0000FF', '#FFA500', '#800080', '#008080', '#FF69B4', '#4B0082'];
    const color = colors[index %% colors.length];
    const rect = element.getBoundingClientRect();
    const overlay = document.createElement('div');
    overlay.style.position = 'fixed';
    overlay.style.border = `2px solid ${color}`;
    overlay.style.boxSizing = 'border-box';
    overlay.style.top = `${rect.top}px`;
    overlay.style.left = `${rect.left}px`;
    overlay.style.width = `${rect.width}px`;
    overlay.style.height = `${rect.height}px`;
    const label = document.createElement('div');
    label.textContent = String(index);
    label.style.position = 'fixed';
    label.style.background = color;
    label.style.color = 'white';
    label.style.fontSize = '11px';
    label.style.padding = '1px 4px';
    label.style.top = `${Math.max(rect.top - 14, 0)}px`;
    label.style.left = `${rect.left}px`;
    container.appendChild(overlay);
    container.appendChild(label);
  };

  const buildTree = (node, parentVisible) => {
    if (!node) return null;

    if (node.nodeType === Node.COMMENT_NODE) {
      if (stripComments) return null;
      return addNode({ type: 'TEXT_NODE', text: `<!-- ${node.textContent.trim()} -->`, isVisible: false });
    }

    if (node.nodeType === Node.TEXT_NODE) {
      let text = (node.textContent || '').replace(/\\s+/g, ' ').trim();
      if (!text) return null;
      if (maxTextLength > 0 && text.length > maxTextLength) text = text.slice(0, maxTextLength) + '...';
      const parent = node.parentElement;
      const isVisible = parentVisible && !!parent && isElementVisible(parent);
      if (!isVisible && !includeHidden) return null;
      return addNode({ type: 'TEXT_NODE', text, isVisible });
    }

    if (node.nodeType !== Node.ELEMENT_NODE) return null;
    if (node.id === CONTAINER_ID) return null;

    const tagName = node.tagName.toLowerCase();
    if (SKIPPED_TAGS.has(tagName)) return null;
    if (stripScripts && SCRIPT_TAGS.has(tagName)) return null;

    const isVisible = node === document.body || isElementVisible(node);
    if (!isVisible && !includeHidden && node !== document.documentElement) return null;

    const attributes = {};
    for (const attr of Array.from(node.attributes || [])) {
      attributes[attr.name] = attr.value;
    }
    if ('value' in node && typeof node.value === 'string' && ['input', 'textarea', 'select'].includes(tagName)) {
      attributes.value = node.value;
    }

    const isInteractive = isVisible && isInteractiveElement(node);
    const isTop = isVisible && isTopElement(node);
    const inViewport = isVisible && isInExpandedViewport(node);
    const rect = node.getBoundingClientRect();

    const entry = {
      tagName,
      xpath: getXPath(node),
      attributes,
      children: [],
      isVisible,
      isInteractive,
      isTopElement: isTop,
      isInViewport: inViewport,
      shadowRoot: !!node.shadowRoot,
      rect: { x: rect.left + window.scrollX, y: rect.top + window.scrollY, width: rect.width, height: rect.height },
    };

    // indices are assigned in document order, before descending into children
    if (isInteractive && isTop && inViewport) {
      entry.highlightIndex = highlightIndex++;
      highlightElement(node, entry.highlightIndex);
    }

    const id = addNode(entry);

    const childNodes = [];
    if (node.shadowRoot) childNodes.push(...node.shadowRoot.childNodes);
    if (tagName === 'iframe') {
      try {
        const doc = node.contentDocument || (node.contentWindow && node.contentWindow.document);
        if (doc && doc.body) childNodes.push(doc.body);
      } catch (e) {
        // cross-origin frames are not accessible
      }
    }
    childNodes.push(...node.childNodes);

    for (const child of childNodes) {
      const childId = buildTree(child, isVisible);
      if (childId !== null) entry.children.push(childId);
    }
    return id;
  };

  const rootId = buildTree(document.body || document.documentElement, true);
  return { rootId, map: nodeMap };
}
""" % {'container_id': HIGHLIGHT_CONTAINER_ID}

REMOVE_HIGHLIGHTS_JS = f"""
() => {{
  const container = document.getElementById('{HIGHLIGHT_CONTAINER_ID}');
  if (container) container.remove();
}}
"""

PAGE_INFO_JS = """
() => {
  const doc = document.documentElement;
  const body = document.body || doc;
  return {
    viewport_width: window.innerWidth,
    viewport_height: window.innerHeight,
    page_width: Math.max(doc.scrollWidth, body.scrollWidth),
    page_height: Math.max(doc.scrollHeight, body.scrollHeight),
    scroll_x: window.scrollX || doc.scrollLeft || 0,
    scroll_y: window.scrollY || doc.scrollTop || 0,
    has_pdf_embed: !!document.querySelector('embed[type="application/pdf"]'),
  };
}
"""

HEALTH_CHECK_JS = '1 + 1'

SCROLL_BY_JS = '(dy) => window.scrollBy(0, dy)'

SCROLL_TO_TEXT_JS = """
(text) => {
  const walker = document.createTreeWalker(document.body, NodeFilter.SHOW_TEXT);
  const needle = text.toLowerCase();
  while (walker.nextNode()) {
    const node = walker.currentNode;
    if (node.textContent && node.textContent.toLowerCase().includes(needle) && node.parentElement) {
      node.parentElement.scrollIntoView({ behavior: 'auto', block: 'center' });
      return true;
    }
  }
  return false;
}
"""

DROPDOWN_OPTIONS_JS = """
(el) => {
  if (!el || !el.options) return null;
  return Array.from(el.options).map((option, index) => ({
    index,
    text: option.text,
    value: option.value,
  }));
}
"""
