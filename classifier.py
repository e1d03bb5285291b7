#Filename: classifier.py
"""
REQUEST CLASSIFIER
Evaluates an ordered list of short-circuit rules against each request.
First match wins; the final rule always matches.
"""

import re
from typing import Callable, List, Optional, Sequence

from structures import IncomingRequest, Decision, ProxyConfig, AUTH_HEADERS, EMPTY_HTML
from proxy_common import (
    LogCallback, UnsupportedSchemeError, AuthenticationPresentError,
    TunnelNotSupportedError, flatten_headers
)

ALLOWED_SCHEMES = frozenset({"http", "https"})

# Web or secure-web URL whose last characters are an image extension.
IMAGE_URL_PATTERN = re.compile(r"(https?:)([/|.\w\s\-?=&%~+:])*\.(?:jpg|gif|png)\Z")

class Rule:
    """A named predicate/action pair."""
    __slots__ = ('name', 'predicate', 'action')

    def __init__(
        self,
        name: str,
        predicate: Callable[[IncomingRequest], bool],
        action: Callable[[IncomingRequest], Decision]
    ):
        self.name = name
        self.predicate = predicate
        self.action = action

    def __repr__(self) -> str:
        return f"<Rule {self.name}>"

# -- Predicates --

def has_unsupported_scheme(request: IncomingRequest) -> bool:
    return request.scheme not in ALLOWED_SCHEMES

def find_auth_header(request: IncomingRequest) -> Optional[str]:
    """Returns the first authentication header carrying a non-empty value."""
    for name in AUTH_HEADERS:
        if request.headers.get(name):
            return name
    return None

def has_auth_header(request: IncomingRequest) -> bool:
    return find_auth_header(request) is not None

def is_head(request: IncomingRequest) -> bool:
    return request.method == "HEAD"

def is_connect(request: IncomingRequest) -> bool:
    return request.method == "CONNECT"

def is_image_url(request: IncomingRequest) -> bool:
    url = request.url
    scheme = request.scheme
    if scheme:
        # Scheme compares case-insensitively, the extension does not
        url = scheme + url[len(scheme):]
    return IMAGE_URL_PATTERN.search(url) is not None

def always(request: IncomingRequest) -> bool:  # pylint: disable=unused-argument
    return True

# -- Actions --

def reject_scheme(request: IncomingRequest) -> Decision:
    return Decision.from_error("scheme", UnsupportedSchemeError(request.scheme))

def reject_auth(request: IncomingRequest) -> Decision:
    return Decision.from_error("authentication", AuthenticationPresentError(find_auth_header(request) or ""))

def answer_head(request: IncomingRequest) -> Decision:  # pylint: disable=unused-argument
    return Decision("head", 200, reason="HEAD request - returning OK")

def reject_connect(request: IncomingRequest) -> Decision:  # pylint: disable=unused-argument
    return Decision.from_error("connect", TunnelNotSupportedError())

def answer_image(request: IncomingRequest) -> Decision:  # pylint: disable=unused-argument
    return Decision("image", 200, reason="Image request")

def answer_empty_html(request: IncomingRequest) -> Decision:  # pylint: disable=unused-argument
    return Decision(
        "default", 200, body=EMPTY_HTML,
        content_type="text/html; charset=utf-8", reason="Returning empty HTML"
    )

def forward_upstream(request: IncomingRequest) -> Decision:  # pylint: disable=unused-argument
    return Decision("forward", reason="Forwarding to upstream", forward=True)

def build_rules(config: Optional[ProxyConfig] = None) -> List[Rule]:
    """
    Returns the rule list in priority order.
    With forwarding enabled, forwarding replaces the empty HTML page as the
    final rule; everything before it is unchanged.
    """
    forwarding = bool(config and config.forwarding_enabled)
    rules = [
        Rule("scheme", has_unsupported_scheme, reject_scheme),
        Rule("authentication", has_auth_header, reject_auth),
        Rule("head", is_head, answer_head),
        Rule("connect", is_connect, reject_connect),
        Rule("image", is_image_url, answer_image),
    ]
    if forwarding:
        rules.append(Rule("forward", always, forward_upstream))
    else:
        rules.append(Rule("default", always, answer_empty_html))
    return rules

class Classifier:
    """Logs each request and picks the first matching rule."""
    __slots__ = ('rules', 'callback', 'redact')

    def __init__(
        self,
        callback: Optional[LogCallback] = None,
        rules: Optional[Sequence[Rule]] = None,
        redact: bool = False
    ):
        self.rules: List[Rule] = list(rules) if rules is not None else build_rules()
        if not self.rules:
            raise ValueError("Classifier needs at least one rule")
        self.callback = callback
        self.redact = redact

    def log(self, level: str, msg: object) -> None:
        """Emits a log message via the callback."""
        if self.callback:
            self.callback(level, msg)

    def classify(self, request: IncomingRequest) -> Decision:
        self.log(
            "REQUEST",
            f"{request.remote_addr} {request.method} {request.url} "
            f"Headers: {flatten_headers(request.headers, self.redact)}"
        )
        for rule in self.rules:
            if rule.predicate(request):
                decision = rule.action(request)
                self.log("DECISION", decision.reason)
                return decision
        # Custom rule lists without a catch-all end up here.
        decision = answer_empty_html(request)
        self.log("DECISION", decision.reason)
        return decision
