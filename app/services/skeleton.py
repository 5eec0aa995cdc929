"""
Structural skeleton extraction from template files.

A skeleton describes *structure to preserve* (headings, paragraph styles,
tables, sheets, headers) and keeps only a few sample rows, clearly marked
as samples, so the compiled generator queries real data instead of copying
what it saw.

Supports .docx (python-docx), .xlsx (openpyxl) and plain text formats
(.md, .txt, .html).
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import re
from pathlib import Path
from typing import Dict, List, Optional

from docx import Document as DocxDocument
from openpyxl import load_workbook

from app.config import settings
from app.utils.helpers import truncate_text

logger = logging.getLogger(__name__)

TEXT_EXTENSIONS = (".md", ".markdown", ".txt", ".html", ".htm")
SUPPORTED_EXTENSIONS = (".docx", ".xlsx") + TEXT_EXTENSIONS

HEADING_STYLES: Dict[str, int] = {
    "title": 1,
    "subtitle": 2,
    "heading 1": 1,
    "heading 2": 2,
    "heading 3": 3,
    "heading 4": 4,
    "heading 5": 5,
    "heading 6": 6,
}


# ---------------------------------------------------------------------------
# Skeleton dataclasses
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class SkeletonBlock:
    kind: str  # heading | paragraph | list_item | table
    text: str = ""
    level: int = 0
    style: Optional[str] = None
    table_index: Optional[int] = None


@dataclasses.dataclass
class SkeletonTable:
    header: List[str]
    sample_rows: List[List[str]]
    row_count: int
    column_count: int
    style: Optional[str] = None


@dataclasses.dataclass
class SheetSkeleton:
    name: str
    max_row: int
    max_column: int
    header: List[str]
    header_row: int
    sample_rows: List[List[str]]
    has_formulas: bool = False
    merged_ranges: List[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class TemplateSkeleton:
    source_format: str  # docx | xlsx | text
    filename: str
    blocks: List[SkeletonBlock] = dataclasses.field(default_factory=list)
    tables: List[SkeletonTable] = dataclasses.field(default_factory=list)
    sheets: List[SheetSkeleton] = dataclasses.field(default_factory=list)
    styles: List[str] = dataclasses.field(default_factory=list)

    @property
    def output_format(self) -> str:
        return "xlsx" if self.source_format == "xlsx" else "docx"

    @property
    def is_empty(self) -> bool:
        return not (self.blocks or self.tables or any(s.header or s.max_row for s in self.sheets))

    def render(self, max_chars: Optional[int] = None) -> str:
        """Human-readable description for the compile prompt."""
        max_chars = max_chars or settings.SKELETON_MAX_CHARS
        lines: List[str] = [f"Source: {self.filename} ({self.source_format})"]

        if self.styles:
            lines.append(f"Styles in use: {', '.join(self.styles)}")

        if self.sheets:
            for sheet in self.sheets:
                lines.append("")
                lines.append(
                    f'Sheet "{sheet.name}": {sheet.max_row} rows x {sheet.max_column} columns'
                    f"{', has formulas' if sheet.has_formulas else ''}"
                )
                if sheet.header:
                    lines.append(f"  Header (row {sheet.header_row}): {' | '.join(sheet.header)}")
                for row in sheet.sample_rows:
                    lines.append(f"  SAMPLE ROW (replace): {' | '.join(row)}")
                if sheet.merged_ranges:
                    lines.append(f"  Merged cells: {', '.join(sheet.merged_ranges[:10])}")

        for block in self.blocks:
            if block.kind == "heading":
                lines.append(f"{'#' * max(1, block.level)} {block.text}")
            elif block.kind == "list_item":
                lines.append(f"  - [{block.style or 'List'}] {block.text}")
            elif block.kind == "table" and block.table_index is not None:
                table = self.tables[block.table_index]
                lines.append(
                    f"[TABLE {block.table_index + 1}: {table.row_count} rows x {table.column_count} cols"
                    f"{', style ' + table.style if table.style else ''}]"
                )
                if table.header:
                    lines.append(f"  Columns: {' | '.join(table.header)}")
                for row in table.sample_rows:
                    lines.append(f"  SAMPLE ROW (replace): {' | '.join(row)}")
            else:
                style = f"[{block.style}] " if block.style else ""
                lines.append(f"{style}{block.text}")

        return truncate_text("\n".join(lines), max_chars, suffix="\n... (skeleton truncated)")


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

async def extract_skeleton(path: Path, sample_rows: Optional[int] = None) -> TemplateSkeleton:
    """Extract a skeleton from *path* off the event loop."""
    return await asyncio.to_thread(extract_skeleton_sync, Path(path), sample_rows)


def extract_skeleton_sync(path: Path, sample_rows: Optional[int] = None) -> TemplateSkeleton:
    samples = settings.SKELETON_SAMPLE_ROWS if sample_rows is None else sample_rows
    ext = path.suffix.lower()
    if ext == ".docx":
        return _docx_skeleton(path, samples)
    if ext == ".xlsx":
        return _xlsx_skeleton(path, samples)
    if ext in TEXT_EXTENSIONS:
        return _text_skeleton(path, samples)
    raise ValueError(f"Unsupported template format: {ext or path.name}")


def _sample_text(text: str) -> str:
    return truncate_text(" ".join(text.split()), 160)


def _docx_skeleton(path: Path, samples: int) -> TemplateSkeleton:
    doc = DocxDocument(str(path))
    skeleton = TemplateSkeleton(source_format="docx", filename=path.name)
    styles: List[str] = []

    def _note_style(name: Optional[str]) -> None:
        if name and name not in styles:
            styles.append(name)

    # Walk the body in document order so tables stay between their paragraphs
    paragraphs = {p._p: p for p in doc.paragraphs}
    tables = {t._tbl: t for t in doc.tables}
    for element in doc.element.body.iterchildren():
        if element in paragraphs:
            para = paragraphs[element]
            text = para.text.strip()
            if not text:
                continue
            style_name = para.style.name if para.style is not None else None
            _note_style(style_name)
            level = HEADING_STYLES.get((style_name or "").lower(), 0)
            if level:
                skeleton.blocks.append(SkeletonBlock("heading", text, level, style_name))
            elif style_name and "list" in style_name.lower():
                skeleton.blocks.append(SkeletonBlock("list_item", _sample_text(text), 0, style_name))
            else:
                skeleton.blocks.append(SkeletonBlock("paragraph", _sample_text(text), 0, style_name))
        elif element in tables:
            table = tables[element]
            rows = [[cell.text.strip() for cell in row.cells] for row in table.rows]
            if not rows:
                continue
            style_name = table.style.name if table.style is not None else None
            _note_style(style_name)
            skeleton.tables.append(SkeletonTable(
                header=rows[0],
                sample_rows=[[_sample_text(c) for c in r] for r in rows[1:1 + samples]],
                row_count=len(rows),
                column_count=max(len(r) for r in rows),
                style=style_name,
            ))
            skeleton.blocks.append(
                SkeletonBlock("table", table_index=len(skeleton.tables) - 1, style=style_name)
            )

    skeleton.styles = styles
    return skeleton


def _xlsx_skeleton(path: Path, samples: int) -> TemplateSkeleton:
    workbook = load_workbook(str(path), data_only=False)
    skeleton = TemplateSkeleton(source_format="xlsx", filename=path.name)
    try:
        for ws in workbook.worksheets:
            header: List[str] = []
            header_row = 0
            rows: List[List[str]] = []
            has_formulas = False

            for row in ws.iter_rows():
                values = []
                for cell in row:
                    value = cell.value
                    if isinstance(value, str) and value.startswith("="):
                        has_formulas = True
                    values.append("" if value is None else str(value))
                if not any(values):
                    continue
                if not header:
                    header, header_row = values, row[0].row
                elif len(rows) < samples:
                    rows.append([_sample_text(v) for v in values])

            skeleton.sheets.append(SheetSkeleton(
                name=ws.title,
                max_row=ws.max_row if header else 0,
                max_column=ws.max_column if header else 0,
                header=header,
                header_row=header_row,
                sample_rows=rows,
                has_formulas=has_formulas,
                merged_ranges=[str(r) for r in ws.merged_cells.ranges],
            ))
    finally:
        workbook.close()
    return skeleton


_MD_HEADING = re.compile(r"^(#{1,6})\s+(.*)$")
_MD_LIST = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+(.*)$")
_HTML_HEADING = re.compile(r"<h([1-6])[^>]*>(.*?)</h\1>", re.IGNORECASE | re.DOTALL)
_HTML_TAG = re.compile(r"<[^>]+>")


def _text_skeleton(path: Path, samples: int) -> TemplateSkeleton:
    raw = path.read_text(encoding="utf-8", errors="replace")
    skeleton = TemplateSkeleton(source_format="text", filename=path.name)

    if path.suffix.lower() in (".html", ".htm"):
        # Promote headings to markdown, drop the remaining markup line by line
        raw = _HTML_HEADING.sub(lambda m: "\n" + "#" * int(m.group(1)) + " " + m.group(2) + "\n", raw)
        raw = re.sub(r"</(p|li|tr|div)>", "\n", raw, flags=re.IGNORECASE)
        raw = _HTML_TAG.sub(" ", raw)

    table_rows: List[List[str]] = []

    def _flush_table() -> None:
        rows = [r for r in table_rows if not all(set(c) <= set("-: ") for c in r)]
        if rows:
            skeleton.tables.append(SkeletonTable(
                header=rows[0],
                sample_rows=rows[1:1 + samples],
                row_count=len(rows),
                column_count=max(len(r) for r in rows),
            ))
            skeleton.blocks.append(SkeletonBlock("table", table_index=len(skeleton.tables) - 1))
        table_rows.clear()

    for line in raw.splitlines():
        stripped = line.strip()
        if stripped.startswith("|") and stripped.endswith("|") and len(stripped) > 1:
            table_rows.append([_sample_text(c) for c in stripped.strip("|").split("|")])
            continue
        if table_rows:
            _flush_table()
        if not stripped:
            continue
        heading = _MD_HEADING.match(stripped)
        if heading:
            skeleton.blocks.append(SkeletonBlock("heading", heading.group(2).strip(), len(heading.group(1))))
            continue
        item = _MD_LIST.match(stripped)
        if item:
            skeleton.blocks.append(SkeletonBlock("list_item", _sample_text(item.group(1))))
        else:
            skeleton.blocks.append(SkeletonBlock("paragraph", _sample_text(stripped)))

    if table_rows:
        _flush_table()
    return skeleton
