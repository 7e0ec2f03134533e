from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Mapping

from jobboard.services.errors import ValidationError

METADATA_MAX_BYTES = 500
PURPOSES = {"new_job", "promote_job", "realtime_alert"}
ONE_TIME_PURPOSES = {"new_job", "promote_job"}


@dataclass(slots=True, frozen=True)
class PaymentCorrelation:
    """Ids linking a gateway object back to the record it pays for.

    Only ids travel in gateway metadata. The full submission stays in staging
    because gateway metadata is size-bounded.
    """

    purpose: str
    owner_ref: str
    staged_submission_id: str | None = None
    alert_id: str | None = None

    @property
    def correlation_id(self) -> str | None:
        if self.purpose in ONE_TIME_PURPOSES:
            return self.staged_submission_id
        return self.alert_id

    def to_metadata(self) -> dict[str, str]:
        if self.purpose not in PURPOSES:
            raise ValidationError(f"unknown payment purpose: {self.purpose}")

        metadata = {"purpose": self.purpose, "ownerRef": self.owner_ref}
        if self.staged_submission_id:
            metadata["stagedSubmissionId"] = self.staged_submission_id
        if self.alert_id:
            metadata["alertId"] = self.alert_id

        if metadata_size(metadata) > METADATA_MAX_BYTES:
            raise ValidationError(f"correlation metadata exceeds {METADATA_MAX_BYTES} bytes")
        return metadata

    @classmethod
    def from_metadata(cls, metadata: Mapping[str, Any] | None) -> PaymentCorrelation:
        data = dict(metadata or {})
        return cls(
            purpose=_text(data.get("purpose")) or "",
            owner_ref=_text(data.get("ownerRef")) or "",
            staged_submission_id=_text(data.get("stagedSubmissionId")),
            alert_id=_text(data.get("alertId")),
        )


def metadata_size(metadata: Mapping[str, str]) -> int:
    return len(json.dumps(dict(metadata), separators=(",", ":")).encode("utf-8"))


def _text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None
