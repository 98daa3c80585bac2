"""
Tests for the admission PDF renderer.
"""

import re
from datetime import datetime, timezone

import pytest

from school_forms_backend.exceptions import RenderError
from school_forms_backend.models import FormSubmission, PhotoUpload, SubmissionKind
from school_forms_backend.renderer import (
    MISSING_VALUE,
    AdmissionPdfRenderer,
    SectionKind,
    attachment_filename,
    photo_attachment_filename,
    plan_sections,
)

STAMP = datetime(2026, 6, 1, 9, 30, tzinfo=timezone.utc)
PAGE_OBJECT = re.compile(rb"/Type /Page(?!s)")


def _submission(fields, photo=None):
    return FormSubmission.create(SubmissionKind.ADMISSION, fields, photo=photo)


def _photo(content, filename="asha.png"):
    return PhotoUpload(content=content, content_type="image/png", filename=filename)


@pytest.fixture
def renderer():
    return AdmissionPdfRenderer()


class TestSectionPlan:
    def test_mandatory_groups_only(self, admission_fields):
        sections = plan_sections(admission_fields, has_photo=False)
        assert [s.kind for s in sections] == [SectionKind.HEADER, SectionKind.TABLE, SectionKind.TABLE]
        assert [s.key for s in sections[1:]] == ["child", "academic"]

    def test_optional_groups_follow_name_fields(self, admission_fields):
        admission_fields.update({"fatherName": "Ravi Rao", "guardianName": "Lakshmi Iyer"})
        sections = plan_sections(admission_fields, has_photo=True)
        assert [s.key for s in sections if s.kind is SectionKind.TABLE] == ["child", "father", "guardian", "academic"]
        assert sections[1].kind is SectionKind.PHOTO

    def test_blank_name_skips_group(self, admission_fields):
        admission_fields.update({"motherName": "   ", "motherOccupation": "Teacher"})
        keys = [s.key for s in plan_sections(admission_fields, has_photo=False)]
        assert "mother" not in keys

    def test_missing_values_show_placeholder_in_mandatory_groups(self, admission_fields):
        del admission_fields["bloodGroup"]
        child = plan_sections(admission_fields, has_photo=False)[1]
        assert ("Blood Group", MISSING_VALUE) in child.rows
        assert len(child.rows) == 6

    def test_blank_rows_dropped_from_optional_groups(self, admission_fields):
        admission_fields.update({"fatherName": "Ravi Rao", "fatherOccupation": "Engineer"})
        father = [s for s in plan_sections(admission_fields, has_photo=False) if s.key == "father"][0]
        assert father.rows == (("Name", "Ravi Rao"), ("Occupation", "Engineer"))


class TestRender:
    def test_returns_pdf_bytes(self, renderer, admission_fields):
        document = renderer.render(_submission(admission_fields), generated_at=STAMP)
        assert document.content.startswith(b"%PDF")
        assert len(document) > 0
        assert bytes(document) == document.content
        assert document.media_type == "application/pdf"

    def test_section_count_matches_present_groups(self, renderer, full_admission_fields):
        minimal = renderer.render(_submission({k: v for k, v in full_admission_fields.items() if not k.startswith(("father", "mother", "guardian"))}), generated_at=STAMP)
        assert len(minimal.table_sections) == 2

        full = renderer.render(_submission(full_admission_fields), generated_at=STAMP)
        assert len(full.table_sections) == 2 + 3

    def test_rendering_is_deterministic_for_same_timestamp(self, renderer, full_admission_fields, photo_bytes):
        submission = _submission(full_admission_fields, _photo(photo_bytes))
        first = renderer.render(submission, generated_at=STAMP)
        second = renderer.render(submission, generated_at=STAMP)
        assert first.content == second.content

    def test_only_timestamp_changes_output(self, renderer, admission_fields):
        submission = _submission(admission_fields)
        first = renderer.render(submission, generated_at=STAMP)
        later = renderer.render(submission, generated_at=datetime(2026, 6, 2, 10, 0, tzinfo=timezone.utc))
        assert first.content != later.content
        assert first.sections == later.sections

    def test_mandatory_groups_fit_on_one_page(self, renderer, admission_fields):
        document = renderer.render(_submission(admission_fields), generated_at=STAMP)
        assert document.page_count == 1
        assert len(PAGE_OBJECT.findall(document.content)) == 1

    def test_all_groups_with_photo_span_pages(self, renderer, full_admission_fields, photo_bytes):
        document = renderer.render(_submission(full_admission_fields, _photo(photo_bytes)), generated_at=STAMP)
        assert document.page_count > 1
        assert len(PAGE_OBJECT.findall(document.content)) == document.page_count

    def test_valid_photo_is_embedded(self, renderer, admission_fields, photo_bytes):
        document = renderer.render(_submission(admission_fields, _photo(photo_bytes)), generated_at=STAMP)
        assert b"/Subtype /Image" in document.content

    def test_corrupt_photo_uses_placeholder(self, renderer, admission_fields, corrupt_photo_bytes):
        document = renderer.render(_submission(admission_fields, _photo(corrupt_photo_bytes)), generated_at=STAMP)
        assert document.content.startswith(b"%PDF")
        assert b"/Subtype /Image" not in document.content
        assert document.sections[1].kind is SectionKind.PHOTO

    def test_long_values_are_wrapped_not_fatal(self, renderer, admission_fields):
        admission_fields["fatherName"] = "Ravi Rao"
        admission_fields["fatherPermanentAddress"] = "Flat 4B, " * 40
        document = renderer.render(_submission(admission_fields), generated_at=STAMP)
        assert document.page_count >= 1

    def test_drawing_failure_raises_render_error(self, renderer, admission_fields, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("canvas exploded")

        monkeypatch.setattr(AdmissionPdfRenderer, "_draw_table_section", explode)
        with pytest.raises(RenderError):
            renderer.render(_submission(admission_fields), generated_at=STAMP)


class TestFilenames:
    def test_attachment_filename(self):
        assert attachment_filename("Asha  Rao", 1717234200000) == "Admission_Asha_Rao_1717234200000.pdf"

    def test_photo_filename_keeps_extension(self):
        assert photo_attachment_filename("Asha Rao", "IMG_01.PNG") == "Photo_Asha_Rao.png"

    def test_photo_filename_defaults_to_jpg(self):
        assert photo_attachment_filename("Asha Rao", "camera") == "Photo_Asha_Rao.jpg"
