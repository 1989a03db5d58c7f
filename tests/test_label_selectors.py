"""Tests for tag conversion and the job label selector."""

import pytest

import admission_service.exceptions
import admission_service.label_selectors
import admission_service.models


class TestTagToLabel:
    def test_equals_sign_is_replaced(self) -> None:
        assert admission_service.label_selectors.tag_to_label("queue=default") == "queue_default"

    def test_plain_tag_is_unchanged(self) -> None:
        assert admission_service.label_selectors.tag_to_label("gpu") == "gpu"

    def test_empty_tag_is_rejected(self) -> None:
        with pytest.raises(admission_service.exceptions.LimiterConfigurationError):
            admission_service.label_selectors.tag_to_label("")

    def test_overlong_tag_is_rejected(self) -> None:
        with pytest.raises(admission_service.exceptions.LimiterConfigurationError) as exception_info:
            admission_service.label_selectors.tag_to_label("queue=" + "a" * 60)

        assert "63" in exception_info.value.detail

    @pytest.mark.parametrize("tag", ["queue=default!", "-queue", "queue=", "queue name"])
    def test_invalid_characters_are_rejected(self, tag: str) -> None:
        with pytest.raises(admission_service.exceptions.LimiterConfigurationError):
            admission_service.label_selectors.tag_to_label(tag)

    def test_tags_to_labels_preserves_order(self) -> None:
        assert admission_service.label_selectors.tags_to_labels(["b=2", "a=1"]) == ["b_2", "a_1"]


class TestBuildJobLabelSelector:
    def test_empty_tag_set_is_rejected(self) -> None:
        with pytest.raises(admission_service.exceptions.LimiterConfigurationError):
            admission_service.label_selectors.build_job_label_selector([])

    def test_rendered_selector_is_stable(self) -> None:
        selector = admission_service.label_selectors.build_job_label_selector(["queue=gpu", "queue=default"])

        assert str(selector) == (
            f"{admission_service.models.JOB_TAG_LABEL} in (queue_default,queue_gpu),"
            f"{admission_service.models.JOB_UUID_LABEL}"
        )

    def test_selector_matches_tagged_job_with_uuid(self) -> None:
        selector = admission_service.label_selectors.build_job_label_selector(["queue=default"])

        assert selector.matches(
            {
                admission_service.models.JOB_TAG_LABEL: "queue_default",
                admission_service.models.JOB_UUID_LABEL: "job-a",
            }
        )

    def test_selector_rejects_other_tags(self) -> None:
        selector = admission_service.label_selectors.build_job_label_selector(["queue=default"])

        assert not selector.matches(
            {
                admission_service.models.JOB_TAG_LABEL: "queue_other",
                admission_service.models.JOB_UUID_LABEL: "job-a",
            }
        )

    def test_selector_requires_uuid_label(self) -> None:
        selector = admission_service.label_selectors.build_job_label_selector(["queue=default"])

        assert not selector.matches({admission_service.models.JOB_TAG_LABEL: "queue_default"})
