"""Markdown rendering for question prompts, answer options, and quiz descriptions.

Authors write prompts in CommonMark with tables and strikethrough. Raw HTML in
the source is escaped rather than passed through, since quiz text is shown to
every participant.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from markdown_it import MarkdownIt

EMPTY_PROMPT_HTML = "<p><em>No content provided.</em></p>"


@dataclass(slots=True)
class PromptRenderer:
    """Turns authored markdown into HTML for the browser client."""

    enable_html: bool = False
    _markdown: MarkdownIt = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._markdown = (
            MarkdownIt("commonmark", {"html": self.enable_html})
            .enable("table")
            .enable("strikethrough")
        )

    def render_prompt(self, markdown_text: str) -> str:
        """Render a question prompt as block HTML; blank prompts get a placeholder."""
        source = markdown_text.strip()
        if not source:
            return EMPTY_PROMPT_HTML
        return self._markdown.render(source)

    def render_description(self, markdown_text: str) -> str:
        source = markdown_text.strip()
        return self._markdown.render(source) if source else ""

    def render_option(self, markdown_text: str) -> str:
        """Options sit inside a button, so they render without a wrapping paragraph."""
        return self._markdown.renderInline(markdown_text.strip())


renderer = PromptRenderer()
