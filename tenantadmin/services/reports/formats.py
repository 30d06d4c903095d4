from __future__ import annotations

import csv
from dataclasses import dataclass
from datetime import date, datetime, timezone
from html import escape
import io
import json
import re
from typing import Any, Callable, Mapping
from urllib.parse import quote

from fastapi.encoders import jsonable_encoder

from tenantadmin.core.errors import ReportRenderError


EXPORT_FORMATS = ("pdf", "xlsx", "csv", "json")

DEFAULT_COLUMNS: list[dict[str, str]] = [
    {"name": "name", "label": "Name"},
    {"name": "email", "label": "Email"},
    {"name": "role", "label": "Role"},
    {"name": "availabilityStatus", "label": "Status"},
]

_WHITESPACE = re.compile(r"\s+")
# Header values are latin-1 on the wire; the quoted fallback keeps printable ASCII only.
_HEADER_UNSAFE = re.compile(r'[^\x20-\x7e]|["\\]')


@dataclass(frozen=True)
class ReportMeta:
    name: str
    description: str | None = None


@dataclass(frozen=True)
class RenderedReport:
    content: str
    content_type: str
    extension: str

    @property
    def size_bytes(self) -> int:
        return len(self.content.encode("utf-8"))


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _generated_label(generated_at: datetime) -> str:
    return generated_at.strftime("%Y-%m-%d")


def _humanize_key(key: str) -> str:
    return key.replace("_", " ")


def render_html(meta: ReportMeta, data: Mapping[str, Any], generated_at: datetime) -> str:
    columns = data.get("columns") or DEFAULT_COLUMNS
    rows = data.get("rows") or []
    summary = data.get("summary") or {}
    parts = [
        "<!DOCTYPE html>",
        "<html>",
        "<head>",
        '<meta charset="utf-8">',
        f"<title>{escape(meta.name)}</title>",
        "<style>",
        "body { font-family: Arial, sans-serif; margin: 24px; color: #1f2937; }",
        "table { border-collapse: collapse; width: 100%; margin-bottom: 24px; }",
        "th, td { border: 1px solid #d1d5db; padding: 6px 10px; text-align: left; }",
        "th { background: #f3f4f6; }",
        ".meta { color: #6b7280; font-size: 12px; }",
        "</style>",
        "</head>",
        "<body>",
        f"<h1>{escape(meta.name)}</h1>",
    ]
    if meta.description:
        parts.append(f"<p>{escape(meta.description)}</p>")
    parts.append(
        f'<p class="meta">Generated: {_generated_label(generated_at)} &middot; '
        f"{int(data.get('rowCount') or len(rows))} rows</p>"
    )
    if summary:
        parts.append("<h2>Summary</h2>")
        parts.append('<table class="summary">')
        for key, value in summary.items():
            parts.append(
                f"<tr><th>{escape(_humanize_key(str(key)))}</th><td>{escape(_cell(value))}</td></tr>"
            )
        parts.append("</table>")
    if rows:
        parts.append('<table class="data">')
        parts.append(
            "<thead><tr>"
            + "".join(f"<th>{escape(column['label'])}</th>" for column in columns)
            + "</tr></thead>"
        )
        parts.append("<tbody>")
        for row in rows:
            parts.append(
                "<tr>"
                + "".join(f"<td>{escape(_cell(row.get(column['name'])))}</td>" for column in columns)
                + "</tr>"
            )
        parts.append("</tbody>")
        parts.append("</table>")
    else:
        parts.append("<p>No data available.</p>")
    parts.extend(["</body>", "</html>"])
    return "\n".join(parts) + "\n"


def render_tsv(meta: ReportMeta, data: Mapping[str, Any], generated_at: datetime) -> str:
    lines = [meta.name]
    if meta.description:
        lines.append(meta.description)
    lines.append(f"Generated: {_generated_label(generated_at)}")
    lines.append("")
    tsv = "\n".join(lines) + "\n"

    summary = data.get("summary") or {}
    if summary:
        tsv += "SUMMARY\n"
        for key, value in summary.items():
            tsv += f"{_humanize_key(str(key))}\t{_cell(value)}\n"
        tsv += "\n\n"

    rows = data.get("rows") or []
    if rows:
        columns = data.get("columns") or DEFAULT_COLUMNS
        tsv += "\t".join(column["label"] for column in columns) + "\n"
        for row in rows:
            tsv += "\t".join(_cell(row.get(column["name"])) for column in columns) + "\n"
    return tsv


def render_csv(meta: ReportMeta, data: Mapping[str, Any], generated_at: datetime) -> str:
    # Quote every field; the csv module doubles embedded quotes under QUOTE_ALL.
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    columns = data.get("columns") or []
    if columns:
        writer.writerow([column["label"] for column in columns])
    for row in data.get("rows") or []:
        writer.writerow([_cell(row.get(column["name"])) for column in columns])
    return buffer.getvalue()


def render_json(meta: ReportMeta, data: Mapping[str, Any], generated_at: datetime) -> str:
    return json.dumps(jsonable_encoder(dict(data)), indent=2)


_Renderer = Callable[[ReportMeta, Mapping[str, Any], datetime], str]

_RENDERERS: dict[str, tuple[_Renderer, str, str]] = {
    # Browsers print the HTML rendition to PDF client-side.
    "pdf": (render_html, "text/html", "html"),
    "xlsx": (render_tsv, "text/tab-separated-values", "xlsx"),
    "csv": (render_csv, "text/csv", "csv"),
    "json": (render_json, "application/json", "json"),
}


def render_report(
    export_format: str,
    meta: ReportMeta,
    data: Mapping[str, Any],
    *,
    generated_at: datetime | None = None,
) -> RenderedReport:
    entry = _RENDERERS.get(export_format)
    if entry is None:
        raise ReportRenderError(f"Unsupported export format: {export_format}")
    renderer, content_type, extension = entry
    content = renderer(meta, data, generated_at or datetime.now(timezone.utc))
    return RenderedReport(content=content, content_type=content_type, extension=extension)


def report_filename(name: str, extension: str, *, timestamp_ms: int) -> str:
    slug = _WHITESPACE.sub("-", name.strip()) or "report"
    return f"{slug}-{timestamp_ms}.{extension}"


def content_disposition(filename: str) -> str:
    fallback = _HEADER_UNSAFE.sub("_", filename)
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"
