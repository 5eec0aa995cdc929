"""Tests for template skeleton extraction."""
from pathlib import Path

import pytest
from docx import Document
from openpyxl import Workbook

from app.services.skeleton import extract_skeleton, extract_skeleton_sync
from tests.fakes import MARKDOWN_TEMPLATE


def _docx_template(path: Path) -> Path:
    doc = Document()
    doc.add_heading("Quarterly Report", 0)
    doc.add_heading("Summary", level=1)
    doc.add_paragraph("Revenue grew 12% over the quarter.")
    doc.add_paragraph("North region leads", style="List Bullet")
    table = doc.add_table(rows=4, cols=2)
    for row, values in zip(table.rows, [("Region", "Revenue"), ("North", "100"), ("South", "80"), ("East", "60")]):
        row.cells[0].text, row.cells[1].text = values
    doc.add_heading("Outlook", level=2)
    doc.save(str(path))
    return path


def _xlsx_template(path: Path) -> Path:
    wb = Workbook()
    ws = wb.active
    ws.title = "Inventory"
    ws.append([])
    ws.append(["Product", "Qty", "Cost"])
    ws.append(["Widget", 4, 2.5])
    ws.append(["Gadget", 2, 9.0])
    ws.append(["Total", "=SUM(B3:B4)", None])
    ws.merge_cells("A7:C7")
    wb.create_sheet("Notes")
    wb.save(str(path))
    return path


@pytest.mark.asyncio
async def test_docx_skeleton_keeps_order_and_styles(tmp_path):
    skeleton = await extract_skeleton(_docx_template(tmp_path / "template.docx"), sample_rows=2)

    assert skeleton.source_format == "docx"
    assert skeleton.output_format == "docx"
    assert [(b.kind, b.text) for b in skeleton.blocks if b.kind != "table"] == [
        ("heading", "Quarterly Report"),
        ("heading", "Summary"),
        ("paragraph", "Revenue grew 12% over the quarter."),
        ("list_item", "North region leads"),
        ("heading", "Outlook"),
    ]
    # Table sits between the list item and the last heading
    kinds = [b.kind for b in skeleton.blocks]
    assert kinds.index("table") == 4

    table = skeleton.tables[0]
    assert table.header == ["Region", "Revenue"]
    assert table.sample_rows == [["North", "100"], ["South", "80"]]
    assert table.row_count == 4
    assert "Heading 1" in skeleton.styles


def test_xlsx_skeleton_finds_header_and_formulas(tmp_path):
    skeleton = extract_skeleton_sync(_xlsx_template(tmp_path / "template.xlsx"), sample_rows=1)

    assert skeleton.output_format == "xlsx"
    inventory, notes = skeleton.sheets
    assert inventory.name == "Inventory"
    assert inventory.header == ["Product", "Qty", "Cost"]
    assert inventory.header_row == 2
    assert inventory.sample_rows == [["Widget", "4", "2.5"]]
    assert inventory.has_formulas is True
    assert inventory.merged_ranges == ["A7:C7"]
    assert notes.header == []
    assert notes.max_row == 0

    rendered = skeleton.render()
    assert "Header (row 2): Product | Qty | Cost" in rendered
    assert "SAMPLE ROW (replace): Widget | 4 | 2.5" in rendered


def test_markdown_skeleton(tmp_path):
    path = tmp_path / "template.md"
    path.write_text(MARKDOWN_TEMPLATE, encoding="utf-8")
    skeleton = extract_skeleton_sync(path)

    assert [b.kind for b in skeleton.blocks] == [
        "heading", "heading", "paragraph", "list_item", "list_item", "table",
    ]
    assert skeleton.blocks[1].level == 2
    assert skeleton.tables[0].header == ["Region", "Revenue"]
    assert skeleton.tables[0].sample_rows == [["North", "100"], ["South", "80"]]
    assert skeleton.render().startswith("Source: template.md (text)\n# Quarterly Report\n## Summary")


def test_html_skeleton_promotes_headings(tmp_path):
    path = tmp_path / "template.html"
    path.write_text("<h1>Status</h1><p>Weekly update</p><h2>Risks</h2><ul><li>Budget</li></ul>", encoding="utf-8")
    skeleton = extract_skeleton_sync(path)

    headings = [(b.text, b.level) for b in skeleton.blocks if b.kind == "heading"]
    assert headings == [("Status", 1), ("Risks", 2)]
    assert any(b.text == "Weekly update" for b in skeleton.blocks)


def test_blank_text_template_is_empty(tmp_path):
    path = tmp_path / "template.txt"
    path.write_text("\n  \n", encoding="utf-8")
    assert extract_skeleton_sync(path).is_empty


def test_unsupported_extension(tmp_path):
    path = tmp_path / "template.pdf"
    path.write_bytes(b"%PDF-1.4")
    with pytest.raises(ValueError, match="Unsupported template format"):
        extract_skeleton_sync(path)


def test_render_truncates_long_skeletons(tmp_path):
    path = tmp_path / "template.md"
    path.write_text("\n".join(f"Paragraph number {i}" for i in range(500)), encoding="utf-8")
    rendered = extract_skeleton_sync(path).render(max_chars=300)

    assert len(rendered) == 300
    assert rendered.endswith("... (skeleton truncated)")
