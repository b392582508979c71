"""Field validation for case records and shipment submissions."""

from __future__ import annotations

import re
from dataclasses import dataclass

from . import constants
from .models import Carrier, CaseRecord, ReturnAddress

_TRACKING_NUMBER_RE = re.compile(r"^[A-Za-z0-9]+$")
_PHONE_RE = re.compile(r"^\+?[0-9][0-9\- ]{4,19}$")


@dataclass(frozen=True)
class Violation:
    field: str
    message: str


class CaseValidator:
    """Collects every violation on a case instead of stopping at the first."""

    def validate(self, case: CaseRecord) -> list[Violation]:
        violations: list[Violation] = []

        if not case.reference_number or not case.reference_number.strip():
            violations.append(Violation("reference_number", "must not be empty"))
        elif len(case.reference_number) > constants.REFERENCE_NUMBER_MAX_LENGTH:
            violations.append(
                Violation(
                    "reference_number",
                    f"must be at most {constants.REFERENCE_NUMBER_MAX_LENGTH} characters",
                )
            )

        if not case.order_number or not case.order_number.strip():
            violations.append(Violation("order_number", "must not be empty"))

        if case.description and len(case.description) > constants.DESCRIPTION_MAX_LENGTH:
            violations.append(
                Violation("description", f"must be at most {constants.DESCRIPTION_MAX_LENGTH} characters")
            )

        if len(case.proof_images) > constants.MAX_PROOF_IMAGES:
            violations.append(
                Violation("proof_images", f"at most {constants.MAX_PROOF_IMAGES} images are allowed")
            )

        if case.applicant_name and len(case.applicant_name) > constants.APPLICANT_NAME_MAX_LENGTH:
            violations.append(
                Violation("applicant_name", f"must be at most {constants.APPLICANT_NAME_MAX_LENGTH} characters")
            )

        if case.applicant_phone and not _PHONE_RE.match(case.applicant_phone):
            violations.append(Violation("applicant_phone", "is not a valid phone number"))

        if case.original_refund_cents < 0:
            violations.append(Violation("original_refund_cents", "must not be negative"))

        for name in ("approved_refund_cents", "actual_refund_cents"):
            value = getattr(case, name)
            if value is None:
                continue
            if value < 0:
                violations.append(Violation(name, "must not be negative"))
            elif value > case.original_refund_cents:
                violations.append(Violation(name, "must not exceed the original refund amount"))

        if case.modification_count < 0:
            violations.append(Violation("modification_count", "must not be negative"))

        return violations


def validate_shipment(carrier: str | None, tracking_no: str | None) -> list[Violation]:
    """Check carrier and tracking number of a customer return parcel."""
    violations: list[Violation] = []

    carrier = (carrier or "").strip()
    if not carrier:
        violations.append(Violation("carrier", "must not be empty"))
    elif len(carrier) > constants.CARRIER_MAX_LENGTH:
        violations.append(Violation("carrier", f"must be at most {constants.CARRIER_MAX_LENGTH} characters"))

    tracking_no = (tracking_no or "").strip()
    if not tracking_no:
        violations.append(Violation("tracking_no", "must not be empty"))
    elif len(tracking_no) > constants.TRACKING_NUMBER_MAX_LENGTH:
        violations.append(
            Violation("tracking_no", f"must be at most {constants.TRACKING_NUMBER_MAX_LENGTH} characters")
        )
    elif not _TRACKING_NUMBER_RE.match(tracking_no):
        violations.append(Violation("tracking_no", "may only contain letters and digits"))

    return violations


def validate_return_address(address: ReturnAddress) -> list[Violation]:
    violations: list[Violation] = []

    for name in ("name", "contact_name", "contact_phone", "province", "city", "address"):
        value = getattr(address, name)
        if not value or not str(value).strip():
            violations.append(Violation(name, "must not be empty"))

    if address.contact_phone and address.contact_phone.strip() and not _PHONE_RE.match(address.contact_phone):
        violations.append(Violation("contact_phone", "is not a valid phone number"))

    return violations


def validate_carrier(carrier: Carrier) -> list[Violation]:
    violations: list[Violation] = []

    code = (carrier.code or "").strip()
    if not code:
        violations.append(Violation("code", "must not be empty"))
    elif len(code) > constants.CARRIER_CODE_MAX_LENGTH:
        violations.append(Violation("code", f"must be at most {constants.CARRIER_CODE_MAX_LENGTH} characters"))

    name = (carrier.name or "").strip()
    if not name:
        violations.append(Violation("name", "must not be empty"))
    elif len(name) > constants.CARRIER_MAX_LENGTH:
        violations.append(Violation("name", f"must be at most {constants.CARRIER_MAX_LENGTH} characters"))

    template = carrier.tracking_url_template
    if template:
        if len(template) > constants.TRACKING_URL_TEMPLATE_MAX_LENGTH:
            violations.append(
                Violation(
                    "tracking_url_template",
                    f"must be at most {constants.TRACKING_URL_TEMPLATE_MAX_LENGTH} characters",
                )
            )
        elif "{tracking_no}" not in template or not template.startswith(("http://", "https://")):
            violations.append(
                Violation("tracking_url_template", "must be an http(s) URL containing {tracking_no}")
            )

    return violations
