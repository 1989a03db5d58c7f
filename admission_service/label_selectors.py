"""
Label selectors for the lifecycle event subscription.

The limiter only cares about backend jobs that carry one of its tags and
a job UUID label.  ``build_job_label_selector`` turns the configured tag
set into a ``LabelSelector`` that can be rendered for the backend's list
API (``str(selector)``) and evaluated locally (``selector.matches``) on
pushed events.

Tags use the agent form ``key=value``; label values cannot contain ``=``,
so it is replaced with ``_`` (``queue=default`` → ``queue_default``).
"""

import dataclasses
import re

import admission_service.exceptions
import admission_service.models

MAXIMUM_LABEL_VALUE_LENGTH = 63

_LABEL_VALUE_PATTERN = re.compile(r"^(([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9])?$")


def tag_to_label(tag: str) -> str:
    """
    Convert one ``key=value`` tag into a label value.

    Raises:
        LimiterConfigurationError: When the converted value is empty, too
            long, or contains characters not allowed in a label value.
    """
    label_value = tag.replace("=", "_")
    if not label_value:
        raise admission_service.exceptions.LimiterConfigurationError(
            detail="Job tags must not be empty.",
        )
    if len(label_value) > MAXIMUM_LABEL_VALUE_LENGTH:
        raise admission_service.exceptions.LimiterConfigurationError(
            detail=(
                f"Job tag {tag!r} is longer than {MAXIMUM_LABEL_VALUE_LENGTH} "
                f"characters once converted to a label value."
            ),
        )
    if not _LABEL_VALUE_PATTERN.match(label_value):
        raise admission_service.exceptions.LimiterConfigurationError(
            detail=(
                f"Job tag {tag!r} does not form a valid label value: use "
                f"alphanumerics, '-', '_' or '.', starting and ending with "
                f"an alphanumeric character."
            ),
        )
    return label_value


def tags_to_labels(tags: list[str]) -> list[str]:
    return [tag_to_label(tag) for tag in tags]


@dataclasses.dataclass(frozen=True)
class LabelSelector:
    """
    A conjunction of ``key in (values)`` and ``key exists`` requirements.

    Rendered as ``"<key> in (v1,v2),<key>"``; values are sorted so the
    rendered form is stable.
    """

    label_values: dict[str, frozenset[str]] = dataclasses.field(default_factory=dict)
    required_labels: frozenset[str] = frozenset()

    def matches(self, labels: dict[str, str]) -> bool:
        for label_key, allowed_values in self.label_values.items():
            if labels.get(label_key) not in allowed_values:
                return False
        return all(label_key in labels for label_key in self.required_labels)

    def __str__(self) -> str:
        requirements = [
            f"{label_key} in ({','.join(sorted(allowed_values))})"
            for label_key, allowed_values in sorted(self.label_values.items())
        ]
        requirements.extend(sorted(self.required_labels))
        return ",".join(requirements)


def build_job_label_selector(tags: list[str]) -> LabelSelector:
    """
    Select backend jobs carrying one of ``tags`` and a job UUID label.

    Raises:
        LimiterConfigurationError: When ``tags`` is empty or any tag is
            malformed.
    """
    if not tags:
        raise admission_service.exceptions.LimiterConfigurationError(
            detail="At least one job tag is required to build the job label selector.",
        )
    return LabelSelector(
        label_values={admission_service.models.JOB_TAG_LABEL: frozenset(tags_to_labels(tags))},
        required_labels=frozenset({admission_service.models.JOB_UUID_LABEL}),
    )
