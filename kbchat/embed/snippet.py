"""
Embed surface
--------------
EMBED_SCRIPT            -- served at /embed/chatbot.js.  Reads data-chatbot-id
                           (required), data-token and data-domain from its own
                           <script> tag, derives the base URL from its src, and
                           mounts a fixed 400x600 iframe container (full screen
                           at <= 768px) with microphone permission.
render_embed_snippet()  -- the copy-paste loader: injects the script tag once
                           per page, guarded by the fixed element id.
build_iframe_url()      -- the same URL the script builds, for server-side use
                           and tests.
"""
from __future__ import annotations

import re
from typing import Optional
from urllib.parse import quote

from kbchat.errors import ValidationError

SCRIPT_PATH = "/embed/chatbot.js"
LOADER_ELEMENT_ID = "chatbot-embed"
CONTAINER_ELEMENT_ID = "chatbot-widget-container"

_SAFE_ATTR = re.compile(r"^[A-Za-z0-9._:-]+$")

_DESKTOP_CSS = (
    "position: fixed; bottom: 20px; right: 20px; width: 400px; height: 600px; "
    "z-index: 999999; border-radius: 12px; box-shadow: 0 10px 25px rgba(0, 0, 0, 0.15); "
    "overflow: hidden; background: white; border: 1px solid #e2e8f0;"
)
_MOBILE_CSS = (
    "position: fixed; bottom: 0; right: 0; left: 0; top: 0; width: 100%; height: 100%; "
    "z-index: 999999; border-radius: 0; box-shadow: none; overflow: hidden; "
    "background: white; border: none;"
)

EMBED_SCRIPT = """\
// Chatbot Embed Script
(function() {
  'use strict';

  var script = document.currentScript || document.querySelector('script[data-chatbot-id]');
  var chatbotId = script && script.getAttribute('data-chatbot-id');
  var token = script && script.getAttribute('data-token');
  var domain = script && script.getAttribute('data-domain');

  if (!chatbotId) {
    console.error('Chatbot ID is required');
    return;
  }

  var desktopCss = '%(desktop_css)s';
  var mobileCss = '%(mobile_css)s';

  var container = document.createElement('div');
  container.id = '%(container_id)s';

  var baseUrl = script.src.replace('%(script_path)s', '');
  var iframeUrl = baseUrl + '/chatbot/' + chatbotId + '?embedded=true';
  if (token) iframeUrl += '&token=' + encodeURIComponent(token);
  if (domain) iframeUrl += '&domain=' + encodeURIComponent(domain);

  var iframe = document.createElement('iframe');
  iframe.src = iframeUrl;
  iframe.style.cssText = 'width: 100%%; height: 100%%; border: none; border-radius: 12px;';
  iframe.allow = 'microphone';

  container.appendChild(iframe);
  document.body.appendChild(container);

  function updateSize() {
    container.style.cssText = window.innerWidth <= 768 ? mobileCss : desktopCss;
  }

  updateSize();
  window.addEventListener('resize', updateSize);
})();
"""


def render_embed_script() -> str:
    return EMBED_SCRIPT % {
        "desktop_css": _DESKTOP_CSS,
        "mobile_css": _MOBILE_CSS,
        "container_id": CONTAINER_ELEMENT_ID,
        "script_path": SCRIPT_PATH,
    }


def build_iframe_url(
    base_url: str,
    chatbot_id: str,
    token: Optional[str] = None,
    domain: Optional[str] = None,
) -> str:
    url = f"{base_url.rstrip('/')}/chatbot/{chatbot_id}?embedded=true"
    if token:
        url += f"&token={quote(token, safe='')}"
    if domain:
        url += f"&domain={quote(domain, safe='')}"
    return url


def _attr(name: str, value: str) -> str:
    if not _SAFE_ATTR.match(value):
        raise ValidationError(f"Unsafe value for {name}: {value!r}")
    return f"    js.setAttribute('{name}', '{value}');\n"


def render_embed_snippet(
    origin: str,
    chatbot_id: str,
    token: Optional[str] = None,
    domain: Optional[str] = None,
) -> str:
    """The <script> loader site owners paste into their pages."""
    attributes = _attr("data-chatbot-id", chatbot_id)
    if token:
        attributes += _attr("data-token", token)
    if domain:
        attributes += _attr("data-domain", domain)

    return (
        "<script>\n"
        "  (function(d, s, id) {\n"
        "    var js, cjs = d.getElementsByTagName(s)[0];\n"
        "    if (d.getElementById(id)) return;\n"
        "    js = d.createElement(s); js.id = id;\n"
        f'    js.src = "{origin.rstrip("/")}{SCRIPT_PATH}";\n'
        f"{attributes}"
        "    cjs.parentNode.insertBefore(js, cjs);\n"
        f"  }}(document, 'script', '{LOADER_ELEMENT_ID}'));\n"
        "</script>"
    )
