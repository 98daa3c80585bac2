"""
PDF rendering for admission enquiries.

The document is drawn directly on a reportlab canvas with a top-down
cursor: a colored header band, an optional framed student photograph, then
one titled two-column table per field group. Before each group the cursor
is checked against the page bottom and a new page is started when the group
would not fit.

Rendering is all-or-nothing. The one tolerated failure is an undecodable
photo, which is replaced by a placeholder in the photo frame.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from io import BytesIO
from typing import List, Mapping, Optional, Sequence, Tuple

from PIL import Image
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import ImageReader, simpleSplit
from reportlab.pdfgen import canvas

from .exceptions import RenderError
from .models import FormSubmission
from .utils import attachment_stem, split_extension

logger = logging.getLogger(__name__)

PAGE_WIDTH, PAGE_HEIGHT = A4
MARGIN = 50
HEADER_HEIGHT = 120
CONTENT_TOP = HEADER_HEIGHT + 20
PAGE_BREAK_THRESHOLD = 700

TABLE_WIDTH = 500
COLUMN_WIDTHS = (200, 300)
ROW_HEIGHT = 25
CELL_PADDING = 5
SECTION_TITLE_HEIGHT = 25
SECTION_GAP = 20

PHOTO_FRAME = (100, 120)
PHOTO_IMAGE = (90, 110)
PHOTO_BLOCK_HEIGHT = 140

HEADER_COLOR = colors.HexColor("#4F46E5")
ALTERNATE_ROW_COLOR = colors.HexColor("#F3F4F6")
BORDER_COLOR = colors.HexColor("#E5E7EB")
TEXT_COLOR = colors.HexColor("#1F2937")
WARNING_COLOR = colors.HexColor("#EF4444")

MISSING_VALUE = "N/A"
TABLE_HEADERS = ("Field", "Details")

Row = Tuple[str, str]


@dataclass(frozen=True)
class FieldGroup:
    key: str
    title: str
    rows: Sequence[Tuple[str, str]]
    presence_field: Optional[str] = None

    @property
    def optional(self) -> bool:
        return self.presence_field is not None


def _relative_rows(prefix: str) -> List[Tuple[str, str]]:
    return [
        ("Name", f"{prefix}Name"),
        ("Nationality", f"{prefix}Nationality"),
        ("Occupation", f"{prefix}Occupation"),
        ("Office Address", f"{prefix}OfficeAddress"),
        ("Distance from School", f"{prefix}Distance"),
        ("Permanent Address", f"{prefix}PermanentAddress"),
        ("Monthly Income", f"{prefix}Income"),
    ]


FIELD_GROUPS: Sequence[FieldGroup] = (
    FieldGroup(
        key="child",
        title="CHILD INFORMATION",
        rows=(
            ("Name of the Child", "childName"),
            ("Date of Birth", "dateOfBirth"),
            ("Sex", "sex"),
            ("Blood Group", "bloodGroup"),
            ("Contact Type", "contactType"),
            ("Contact Number", "contactNumber"),
        ),
    ),
    FieldGroup(key="father", title="FATHER DETAILS", rows=_relative_rows("father"), presence_field="fatherName"),
    FieldGroup(key="mother", title="MOTHER DETAILS", rows=_relative_rows("mother"), presence_field="motherName"),
    FieldGroup(
        key="guardian",
        title="GUARDIAN DETAILS",
        rows=[("Relationship", "guardianRelation"), *_relative_rows("guardian")],
        presence_field="guardianName",
    ),
    FieldGroup(
        key="academic",
        title="ACADEMIC INFORMATION",
        rows=(
            ("Class Seeking Admission", "classAdmission"),
            ("TC Attached", "tcAttached"),
            ("How did you know about us", "howKnow"),
        ),
    ),
)


class SectionKind(str, Enum):
    HEADER = "header"
    PHOTO = "photo"
    TABLE = "table"


@dataclass(frozen=True)
class Section:
    kind: SectionKind
    title: str
    key: str = ""
    rows: Tuple[Row, ...] = ()

    @property
    def height(self) -> float:
        if self.kind is SectionKind.TABLE:
            return SECTION_TITLE_HEIGHT + ROW_HEIGHT * (len(self.rows) + 1)
        if self.kind is SectionKind.PHOTO:
            return SECTION_TITLE_HEIGHT + PHOTO_BLOCK_HEIGHT
        return HEADER_HEIGHT


@dataclass
class RenderedDocument:
    content: bytes
    sections: List[Section]
    page_count: int
    generated_at: datetime
    media_type: str = field(default="application/pdf")

    @property
    def table_sections(self) -> List[Section]:
        return [section for section in self.sections if section.kind is SectionKind.TABLE]

    def __bytes__(self) -> bytes:
        return self.content

    def __len__(self) -> int:
        return len(self.content)


def plan_sections(fields: Mapping[str, str], has_photo: bool, title: str = "") -> List[Section]:
    """
    Decide which sections an admission document contains, in order.

    Optional relative groups appear only when their name field is filled;
    their blank rows are dropped. Always-present groups keep every row and
    show a placeholder for missing values.
    """
    sections = [Section(kind=SectionKind.HEADER, title=title)]
    if has_photo:
        sections.append(Section(kind=SectionKind.PHOTO, title="STUDENT PHOTOGRAPH", key="photo"))

    for group in FIELD_GROUPS:
        if group.optional:
            if not (fields.get(group.presence_field) or "").strip():
                continue
            rows = tuple(
                (label, value)
                for label, value in ((label, (fields.get(name) or "").strip()) for label, name in group.rows)
                if value
            )
            if not rows:
                continue
        else:
            rows = tuple((label, (fields.get(name) or "").strip() or MISSING_VALUE) for label, name in group.rows)
        sections.append(Section(kind=SectionKind.TABLE, title=group.title, key=group.key, rows=rows))
    return sections


def load_photo(content: bytes) -> ImageReader:
    """Decode photo bytes with Pillow; raises on anything that is not an image."""
    with Image.open(BytesIO(content)) as image:
        image.load()
        converted = image.convert("RGB")
    return ImageReader(converted)


def attachment_filename(child_name: str, epoch_ms: int) -> str:
    return f"Admission_{attachment_stem(child_name)}_{epoch_ms}.pdf"


def photo_attachment_filename(child_name: str, original_filename: str) -> str:
    _, extension = split_extension(original_filename)
    return f"Photo_{attachment_stem(child_name)}{extension}"


class _PageWriter:
    """Canvas wrapper that tracks a top-down cursor and the page count."""

    def __init__(self, pdf: canvas.Canvas) -> None:
        self.pdf = pdf
        self.cursor: float = 0
        self.page_count = 1

    @staticmethod
    def baseline(top: float, font_size: float) -> float:
        return PAGE_HEIGHT - top - font_size * 0.8

    def new_page(self) -> None:
        self.pdf.showPage()
        self.page_count += 1
        self.cursor = MARGIN

    def ensure_room(self, height: float) -> None:
        if self.cursor > PAGE_BREAK_THRESHOLD or self.cursor + height > PAGE_HEIGHT - MARGIN:
            self.new_page()

    def fill_rect(self, x: float, top: float, width: float, height: float, color) -> None:
        self.pdf.setFillColor(color)
        self.pdf.rect(x, PAGE_HEIGHT - top - height, width, height, stroke=0, fill=1)

    def hline(self, top: float) -> None:
        self.pdf.line(MARGIN, PAGE_HEIGHT - top, MARGIN + TABLE_WIDTH, PAGE_HEIGHT - top)

    def vline(self, x: float, top: float, height: float) -> None:
        self.pdf.line(x, PAGE_HEIGHT - top, x, PAGE_HEIGHT - top - height)

    def text(self, value: str, x: float, top: float, font: str, size: float, color) -> None:
        self.pdf.setFillColor(color)
        self.pdf.setFont(font, size)
        self.pdf.drawString(x, self.baseline(top, size), value)


class AdmissionPdfRenderer:
    """Builds the admission enquiry PDF for one submission."""

    def __init__(
        self,
        school_name: str = "MINERVAA VIDHYA MANDHIR",
        form_title: str = "Admission Enquiry Form",
        author: str = "Minervaa Vidhya Mandhir School",
    ) -> None:
        self.school_name = school_name
        self.form_title = form_title
        self.author = author

    @classmethod
    def from_settings(cls, settings) -> "AdmissionPdfRenderer":
        return cls(
            school_name=settings.school.name,
            form_title=settings.school.form_title,
            author=settings.school.author,
        )

    def render(self, submission: FormSubmission, generated_at: Optional[datetime] = None) -> RenderedDocument:
        generated_at = generated_at or datetime.now(timezone.utc)
        sections = plan_sections(submission.fields, has_photo=bool(submission.photo and submission.photo.content), title=self.form_title)
        buffer = BytesIO()
        try:
            pdf = canvas.Canvas(buffer, pagesize=A4, invariant=1, pageCompression=1)
            pdf.setTitle(f"Admission Form - {submission.get('childName') or 'Unknown'}")
            pdf.setAuthor(self.author)
            writer = _PageWriter(pdf)

            for section in sections:
                if section.kind is SectionKind.HEADER:
                    self._draw_header(writer, generated_at)
                elif section.kind is SectionKind.PHOTO:
                    self._draw_photo(writer, submission.photo.content)
                else:
                    self._draw_table_section(writer, section)

            pdf.save()
        except Exception as exc:
            logger.error(f"PDF generation failed: {exc}")
            raise RenderError("Failed to generate form. Please try again.") from exc

        content = buffer.getvalue()
        logger.info(f"PDF generated: {len(content)} bytes, {writer.page_count} page(s)")
        return RenderedDocument(
            content=content,
            sections=sections,
            page_count=writer.page_count,
            generated_at=generated_at,
        )

    def _draw_header(self, writer: _PageWriter, generated_at: datetime) -> None:
        pdf = writer.pdf
        writer.fill_rect(0, 0, PAGE_WIDTH, HEADER_HEIGHT, HEADER_COLOR)
        pdf.setFillColor(colors.white)
        pdf.setFont("Helvetica-Bold", 28)
        pdf.drawCentredString(PAGE_WIDTH / 2, writer.baseline(30, 28), self.school_name)
        pdf.setFont("Helvetica-Bold", 16)
        pdf.drawCentredString(PAGE_WIDTH / 2, writer.baseline(70, 16), self.form_title)
        pdf.setFont("Helvetica-Bold", 10)
        stamp = generated_at.strftime("%Y-%m-%d %H:%M:%S %Z").strip()
        pdf.drawRightString(PAGE_WIDTH - MARGIN, writer.baseline(100, 10), f"Generated on: {stamp}")
        writer.cursor = CONTENT_TOP

    def _draw_photo(self, writer: _PageWriter, content: bytes) -> None:
        pdf = writer.pdf
        writer.ensure_room(SECTION_TITLE_HEIGHT + PHOTO_BLOCK_HEIGHT)
        writer.text("STUDENT PHOTOGRAPH", MARGIN, writer.cursor, "Helvetica-Bold", 14, TEXT_COLOR)
        writer.cursor += SECTION_TITLE_HEIGHT

        frame_width, frame_height = PHOTO_FRAME
        image_width, image_height = PHOTO_IMAGE
        frame_x = (PAGE_WIDTH - frame_width) / 2
        top = writer.cursor

        pdf.setStrokeColor(HEADER_COLOR)
        pdf.setLineWidth(2)
        pdf.rect(frame_x, PAGE_HEIGHT - top - frame_height, frame_width, frame_height, stroke=1, fill=0)

        try:
            photo = load_photo(content)
            pdf.drawImage(
                photo,
                frame_x + 5,
                PAGE_HEIGHT - top - 5 - image_height,
                width=image_width,
                height=image_height,
                preserveAspectRatio=True,
                anchor="c",
            )
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            logger.warning(f"Student photo could not be decoded, using placeholder: {exc}")
            pdf.setFillColor(WARNING_COLOR)
            pdf.setFont("Helvetica", 10)
            pdf.drawCentredString(PAGE_WIDTH / 2, writer.baseline(top + frame_height / 2, 10), "Photo unavailable")

        writer.cursor += PHOTO_BLOCK_HEIGHT

    def _draw_table_section(self, writer: _PageWriter, section: Section) -> None:
        writer.ensure_room(section.height)
        writer.text(section.title, MARGIN, writer.cursor, "Helvetica-Bold", 16, HEADER_COLOR)
        writer.cursor += SECTION_TITLE_HEIGHT
        writer.cursor = self._draw_table(writer, section.rows, writer.cursor)
        writer.cursor += SECTION_GAP

    def _draw_table(self, writer: _PageWriter, rows: Sequence[Row], top: float) -> float:
        pdf = writer.pdf

        writer.fill_rect(MARGIN, top, TABLE_WIDTH, ROW_HEIGHT, HEADER_COLOR)
        x = MARGIN
        for header, width in zip(TABLE_HEADERS, COLUMN_WIDTHS):
            writer.text(header, x + CELL_PADDING, top + 8, "Helvetica-Bold", 10, colors.white)
            x += width

        y = top + ROW_HEIGHT
        for index, row in enumerate(rows):
            if index % 2 == 0:
                writer.fill_rect(MARGIN, y, TABLE_WIDTH, ROW_HEIGHT, ALTERNATE_ROW_COLOR)

            pdf.setStrokeColor(BORDER_COLOR)
            pdf.setLineWidth(0.5)
            line_x = MARGIN
            writer.vline(line_x, y, ROW_HEIGHT)
            for width in COLUMN_WIDTHS:
                line_x += width
                writer.vline(line_x, y, ROW_HEIGHT)
            writer.hline(y)

            x = MARGIN
            for cell, width in zip(row, COLUMN_WIDTHS):
                self._draw_cell(writer, cell or MISSING_VALUE, x, y, width)
                x += width
            y += ROW_HEIGHT

        pdf.setStrokeColor(BORDER_COLOR)
        pdf.setLineWidth(0.5)
        writer.hline(y)
        return y

    @staticmethod
    def _draw_cell(writer: _PageWriter, value: str, x: float, top: float, width: float) -> None:
        font, size = "Helvetica", 9
        lines = simpleSplit(value, font, size, width - CELL_PADDING * 2) or [value]
        if len(lines) > 2:
            lines = [lines[0], lines[1].rstrip()[:-1] + "…"]
        offsets = (8,) if len(lines) == 1 else (3, 13)
        for line, offset in zip(lines, offsets):
            writer.text(line, x + CELL_PADDING, top + offset, font, size, TEXT_COLOR)
