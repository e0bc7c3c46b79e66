"""
Rendering of lesson results as a self-contained HTML page or plain text.
"""

import base64
import html
from pathlib import Path
from typing import List, Sequence

from .core.lessons import LessonResult
from .utils.validators import _validate_choice

REPORT_FORMATS = ("html", "text")

_STYLE = """
body { font-family: Georgia, serif; max-width: 60em; margin: 2em auto; padding: 0 1em; color: #222; }
h1 { border-bottom: 2px solid #2E86AB; padding-bottom: 0.3em; }
h2 { color: #2E86AB; margin-top: 2em; }
pre { background: #f6f8fa; border: 1px solid #ddd; padding: 0.8em; overflow-x: auto; font-size: 0.85em; }
figure { margin: 1em 0; text-align: center; }
figure img { max-width: 100%; }
figcaption, .output-title { font-style: italic; color: #555; }
.warning { background: #fff4e5; border-left: 4px solid #F18F01; padding: 0.5em 0.8em; margin: 0.5em 0; }
nav ol { line-height: 1.6; }
footer { margin-top: 3em; font-size: 0.8em; color: #888; }
"""


def _lesson_html(result: LessonResult, number: int) -> List[str]:
    parts = [f'<section id="{html.escape(result.key)}">', f"<h2>{number}. {html.escape(result.title)}</h2>"]
    for block in result.blocks:
        if block.kind == "text":
            parts.append(f"<p>{html.escape(block.content)}</p>")
        elif block.kind == "code":
            if block.title:
                parts.append(f'<p class="output-title">&gt; {html.escape(block.title)}</p>')
            parts.append(f"<pre>{html.escape(block.content)}</pre>")
        elif block.kind == "figure":
            encoded = base64.b64encode(block.content).decode("ascii")
            caption = html.escape(block.title)
            parts.append(
                f'<figure><img src="data:image/png;base64,{encoded}" alt="{caption}">'
                f"<figcaption>{caption}</figcaption></figure>"
            )
        elif block.kind == "warning":
            parts.append(f'<div class="warning">Warning: {html.escape(block.content)}</div>')
    parts.append("</section>")
    return parts


def render_html(results: Sequence[LessonResult], title: str = "LMMTour: linear and mixed models by simulation") -> str:
    """Render lesson results as one HTML page with embedded figures."""
    escaped_title = html.escape(title)
    parts = [
        "<!DOCTYPE html>",
        '<html lang="en">',
        "<head>",
        '<meta charset="utf-8">',
        f"<title>{escaped_title}</title>",
        f"<style>{_STYLE}</style>",
        "</head>",
        "<body>",
        f"<h1>{escaped_title}</h1>",
        "<nav><h3>Contents</h3><ol>",
    ]
    for result in results:
        parts.append(f'<li><a href="#{html.escape(result.key)}">{html.escape(result.title)}</a></li>')
    parts.append("</ol></nav>")
    for number, result in enumerate(results, start=1):
        parts.extend(_lesson_html(result, number))
    parts.extend(["<footer>made in LMMTour: linear and mixed models by simulation</footer>", "</body>", "</html>"])
    return "\n".join(parts) + "\n"


def render_text(results: Sequence[LessonResult], title: str = "LMMTour: linear and mixed models by simulation") -> str:
    """Render lesson results as plain text; figures are listed by title."""
    lines = [title, "=" * len(title), ""]
    for number, result in enumerate(results, start=1):
        heading = f"{number}. {result.title}"
        lines.extend([heading, "-" * len(heading), ""])
        for block in result.blocks:
            if block.kind == "text":
                lines.extend([block.content, ""])
            elif block.kind == "code":
                if block.title:
                    lines.append(f"> {block.title}")
                lines.extend([block.content.rstrip("\n"), ""])
            elif block.kind == "figure":
                lines.extend([f"[Figure: {block.title}]", ""])
            elif block.kind == "warning":
                lines.extend([f"Warning: {block.content}", ""])
    return "\n".join(lines)


def save_report(results: Sequence[LessonResult], path, fmt: str = "html", title: str = "LMMTour: linear and mixed models by simulation") -> str:
    """Write the rendered results to *path* (UTF-8), creating parent directories.

    Returns:
        The path written, as a string.
    """
    _validate_choice(fmt, REPORT_FORMATS, "format").raise_if_invalid()
    content = render_html(results, title) if fmt == "html" else render_text(results, title)
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    return str(target)
