"""
What a compiled generator receives and what it must hand back.

A generator is ``async def generate(toolkit, builder, context)``:

- ``toolkit``  — live data queries against the customer's workspace
- ``builder``  — ``DocumentBuilder`` or ``SpreadsheetBuilder``
- ``context``  — caller-supplied parameters (plain dict)

It either fills the builder and returns ``None``, or returns a dict with
``blocks`` (document) / ``sheets`` (spreadsheet), a list of those, or a
markdown string for documents.  ``normalize_output`` validates all of these
into ``DocumentOutput`` / ``SpreadsheetOutput``.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from app.services.exceptions import DocForgeError, GenerationFailed
from app.utils.parsing import Parsed

logger = logging.getLogger(__name__)

_CELL_REF_RE = re.compile(r"^[A-Z]{1,3}[1-9][0-9]*$")


# ---------------------------------------------------------------------------
# Output models
# ---------------------------------------------------------------------------

class TextRun(BaseModel):
    text: str
    bold: bool = False
    italic: bool = False
    underline: bool = False
    color: Optional[str] = None


class DocumentBlock(BaseModel):
    type: Literal["heading", "paragraph", "bullet_list", "numbered_list", "table", "page_break"]
    text: Optional[str] = None
    level: Optional[int] = Field(None, ge=1, le=6)
    style: Optional[str] = None
    align: Optional[Literal["left", "center", "right", "justify"]] = None
    runs: List[TextRun] = Field(default_factory=list)
    items: List[str] = Field(default_factory=list)
    rows: List[List[str]] = Field(default_factory=list)
    header: bool = True


class DocumentOutput(BaseModel):
    format: Literal["document"] = "document"
    blocks: List[DocumentBlock]


class CellWrite(BaseModel):
    ref: str
    value: Any = Field(None, alias="v")
    num_fmt: Optional[str] = Field(None, alias="numFmt")
    bold: bool = False
    italic: bool = False
    underline: bool = False
    strike: bool = False
    color: Optional[str] = None
    bg: Optional[str] = None
    align: Optional[str] = None
    wrap: bool = False

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("ref")
    @classmethod
    def _valid_ref(cls, v: str) -> str:
        v = v.strip().upper()
        if not _CELL_REF_RE.match(v):
            raise ValueError(f"invalid cell reference: {v!r}")
        return v


class RangeWrite(BaseModel):
    start: str
    values: List[List[Any]]
    num_fmt: Optional[str] = Field(None, alias="numFmt")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("start")
    @classmethod
    def _valid_start(cls, v: str) -> str:
        v = v.strip().upper()
        if not _CELL_REF_RE.match(v):
            raise ValueError(f"invalid cell reference: {v!r}")
        return v


class RowInsert(BaseModel):
    at: int = Field(..., ge=1)
    count: int = Field(1, ge=1)
    copy_style_from_row: Optional[int] = Field(None, ge=1, alias="copyStyleFromRow")

    model_config = ConfigDict(populate_by_name=True)


class SheetOps(BaseModel):
    name: str = Field(..., min_length=1)
    insert_rows: List[RowInsert] = Field(default_factory=list, alias="insertRows")
    cells: List[CellWrite] = Field(default_factory=list)
    ranges: List[RangeWrite] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @property
    def is_empty(self) -> bool:
        return not (self.insert_rows or self.cells or self.ranges)


class SpreadsheetOutput(BaseModel):
    format: Literal["spreadsheet"] = "spreadsheet"
    sheets: List[SheetOps]


GeneratorOutput = Union[DocumentOutput, SpreadsheetOutput]


# ---------------------------------------------------------------------------
# Toolkit
# ---------------------------------------------------------------------------

class Toolkit:
    """
    Data queries available to a generator, bound to one workspace.

    Query failures are logged and return an empty value so one bad query
    does not sink the whole document.
    """

    def __init__(self, assistant: Any, workspace_slug: str) -> None:
        self._assistant = assistant
        self._workspace = workspace_slug
        self._calls = 0

    @property
    def call_count(self) -> int:
        return self._calls

    async def query_structured(self, prompt: str) -> Any:
        """Ask for JSON; returns the parsed value or ``[]``."""
        self._calls += 1
        try:
            result = await self._assistant.query_json(self._workspace, str(prompt))
        except DocForgeError as exc:
            logger.warning("toolkit.query_structured failed: %s", exc)
            return []
        if isinstance(result, Parsed):
            return result.value
        logger.warning("toolkit.query_structured: unparseable reply: %s", result.raw_text[:200])
        return []

    async def query_text(self, prompt: str) -> str:
        """Ask a free-text question; returns ``""`` on failure."""
        self._calls += 1
        try:
            return await self._assistant.chat(self._workspace, str(prompt))
        except DocForgeError as exc:
            logger.warning("toolkit.query_text failed: %s", exc)
            return ""

    # Short aliases
    async def json(self, prompt: str) -> Any:
        return await self.query_structured(prompt)

    async def query(self, prompt: str) -> str:
        return await self.query_text(prompt)

    async def text(self, prompt: str) -> str:
        return await self.query_text(prompt)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

class DocumentBuilder:
    """Collects ordered block-level content."""

    output_format = "docx"

    def __init__(self) -> None:
        self._blocks: List[DocumentBlock] = []

    def add_heading(self, text: str, level: int = 1) -> None:
        self._blocks.append(DocumentBlock(type="heading", text=str(text), level=min(max(int(level), 1), 6)))

    def add_paragraph(
        self,
        text: str = "",
        style: Optional[str] = None,
        runs: Optional[List[Dict[str, Any]]] = None,
        bold: bool = False,
        italic: bool = False,
        align: Optional[str] = None,
    ) -> None:
        run_models = [TextRun(**r) if isinstance(r, dict) else TextRun(text=str(r)) for r in runs or []]
        if not run_models and (bold or italic):
            run_models = [TextRun(text=str(text), bold=bold, italic=italic)]
        self._blocks.append(DocumentBlock(
            type="paragraph", text=str(text), style=style, runs=run_models, align=align,
        ))

    def add_bullet_list(self, items: List[Any]) -> None:
        self._blocks.append(DocumentBlock(type="bullet_list", items=[str(i) for i in items]))

    def add_numbered_list(self, items: List[Any]) -> None:
        self._blocks.append(DocumentBlock(type="numbered_list", items=[str(i) for i in items]))

    def add_table(self, rows: List[List[Any]], header: bool = True, style: Optional[str] = None) -> None:
        cleaned = [["" if c is None else str(c) for c in row] for row in rows]
        self._blocks.append(DocumentBlock(type="table", rows=cleaned, header=header, style=style))

    def page_break(self) -> None:
        self._blocks.append(DocumentBlock(type="page_break"))

    def to_output(self) -> DocumentOutput:
        return DocumentOutput(blocks=list(self._blocks))


class SpreadsheetBuilder:
    """Collects per-sheet cell writes, range writes and row insertions."""

    output_format = "xlsx"

    def __init__(self) -> None:
        self._sheets: Dict[str, SheetOps] = {}

    def _sheet(self, name: str) -> SheetOps:
        if name not in self._sheets:
            self._sheets[name] = SheetOps(name=name)
        return self._sheets[name]

    def set_cell(self, sheet: str, ref: str, value: Any, **style: Any) -> None:
        self._sheet(sheet).cells.append(CellWrite(ref=ref, value=value, **style))

    def set_range(self, sheet: str, start: str, values: List[List[Any]], num_fmt: Optional[str] = None) -> None:
        self._sheet(sheet).ranges.append(RangeWrite(start=start, values=values, num_fmt=num_fmt))

    def insert_rows(
        self, sheet: str, at: int, count: int = 1, copy_style_from_row: Optional[int] = None
    ) -> None:
        self._sheet(sheet).insert_rows.append(
            RowInsert(at=at, count=count, copy_style_from_row=copy_style_from_row)
        )

    def to_output(self) -> SpreadsheetOutput:
        return SpreadsheetOutput(sheets=list(self._sheets.values()))


def builder_for(output_format: Optional[str]) -> Union[DocumentBuilder, SpreadsheetBuilder]:
    if (output_format or "").lower().lstrip(".") in ("xlsx", "xls", "spreadsheet"):
        return SpreadsheetBuilder()
    return DocumentBuilder()


# ---------------------------------------------------------------------------
# Output normalisation
# ---------------------------------------------------------------------------

_MD_HEADING = re.compile(r"^(#{1,6})\s+(.*)$")
_MD_BULLET = re.compile(r"^[-*+]\s+(.*)$")
_MD_NUMBERED = re.compile(r"^\d+[.)]\s+(.*)$")


def _markdown_blocks(text: str) -> List[Dict[str, Any]]:
    blocks: List[Dict[str, Any]] = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        heading = _MD_HEADING.match(line)
        bullet = _MD_BULLET.match(line)
        numbered = _MD_NUMBERED.match(line)
        if heading:
            blocks.append({"type": "heading", "text": heading.group(2), "level": len(heading.group(1))})
        elif bullet or numbered:
            kind = "bullet_list" if bullet else "numbered_list"
            item = (bullet or numbered).group(1)
            if blocks and blocks[-1]["type"] == kind:
                blocks[-1]["items"].append(item)
            else:
                blocks.append({"type": kind, "items": [item]})
        else:
            blocks.append({"type": "paragraph", "text": line})
    return blocks


def normalize_output(raw: Any, builder: Union[DocumentBuilder, SpreadsheetBuilder]) -> GeneratorOutput:
    """Validate a generator's return value (or its builder) into a typed output."""
    spreadsheet = isinstance(builder, SpreadsheetBuilder)
    try:
        if raw is None:
            output = builder.to_output()
        elif spreadsheet:
            if isinstance(raw, list):
                raw = {"sheets": raw}
            if not isinstance(raw, dict):
                raise GenerationFailed(f"Spreadsheet generator returned {type(raw).__name__}")
            output = SpreadsheetOutput.model_validate({"sheets": raw.get("sheets", [])})
        else:
            if isinstance(raw, str):
                raw = {"blocks": _markdown_blocks(raw)}
            elif isinstance(raw, list):
                raw = {"blocks": raw}
            if not isinstance(raw, dict):
                raise GenerationFailed(f"Document generator returned {type(raw).__name__}")
            output = DocumentOutput.model_validate({"blocks": raw.get("blocks", [])})
    except ValidationError as exc:
        raise GenerationFailed(f"Generator output failed validation: {exc.error_count()} error(s)") from exc

    if isinstance(output, SpreadsheetOutput):
        if all(sheet.is_empty for sheet in output.sheets):
            raise GenerationFailed("Generator produced no spreadsheet operations")
    elif not output.blocks:
        raise GenerationFailed("Generator produced no content")
    return output
