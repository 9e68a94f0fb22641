"""Email channel adapter."""

from __future__ import annotations

import html
from typing import Any, List, Mapping, Optional

from ..errors import RenderWarning
from .base import ChannelAdapter, substitute_tokens


class EmailAdapter(ChannelAdapter):
    """Email has no length ceiling but carries a subject line."""

    channel = "email"
    address_fields = ("email",)

    def render_subject(
        self,
        subject: Optional[str],
        context: Mapping[str, Any],
        warnings: List[RenderWarning],
    ) -> Optional[str]:
        if subject is None:
            return None
        return substitute_tokens(subject, context, warnings)

    def format_body(self, body: str) -> str:
        # HTML templates pass through; plain text keeps its line breaks.
        if "<" in body and ">" in body:
            return body
        return html.escape(body).replace("\n", "<br>")
