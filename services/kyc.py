# KYC checks for payout requests

import re
from typing import Optional, Tuple

from services.errors import InvalidAadhaarLength, InvalidKyc, InvalidUpiFormat

UPI_RE = re.compile(r"^[A-Za-z0-9._-]{2,256}@[A-Za-z][A-Za-z0-9]{1,63}$")
IFSC_RE = re.compile(r"^[A-Z]{4}0[A-Z0-9]{6}$")

MANDATORY_FIELDS = ("account_holder", "bank_account", "ifsc", "bank_name", "city", "aadhaar", "pan")

# IFSC bank code -> substrings expected in the bank name
IFSC_BANK_NAMES = {
    "SBIN": ("state bank", "sbi"),
    "HDFC": ("hdfc",),
    "ICIC": ("icici",),
    "UTIB": ("axis",),
    "KKBK": ("kotak",),
    "PUNB": ("punjab national", "pnb"),
    "BARB": ("baroda", "bob"),
    "CNRB": ("canara",),
    "UBIN": ("union bank",),
    "IDIB": ("indian bank",),
    "IOBA": ("indian overseas", "iob"),
    "BKID": ("bank of india", "boi"),
    "YESB": ("yes bank",),
    "IDFB": ("idfc",),
    "INDB": ("indusind",),
    "FDRL": ("federal",),
}


def digits_only(value: Optional[str]) -> str:
    return re.sub(r"\D", "", value or "")


def mask_aadhaar(digits: str) -> str:
    return "X" * (len(digits) - 4) + digits[-4:]


def ifsc_bank_mismatch(ifsc: str, bank_name: str) -> bool:
    """True when the IFSC's bank code is known and the bank name does not match it."""
    expected = IFSC_BANK_NAMES.get(ifsc[:4])
    if not expected:
        return False
    name = bank_name.lower()
    return not any(fragment in name for fragment in expected)


def validate_kyc(form) -> Tuple[dict, dict]:
    """
    Validate a payout form and return (snapshot, flags).

    `snapshot` holds the normalized values stored on the payout; the full
    Aadhaar number is never kept, only its masked form. `flags` carries
    warnings that do not block the request (bank name vs IFSC).
    """
    values = {field: (getattr(form, field, None) or "").strip() for field in MANDATORY_FIELDS}
    missing = [field for field, value in values.items() if not value]
    if missing:
        raise InvalidKyc(f"Missing required fields: {', '.join(missing)}", missing=missing)

    upi_id = (getattr(form, "upi_id", None) or "").strip()
    if upi_id and not UPI_RE.match(upi_id):
        raise InvalidUpiFormat(f"UPI id {upi_id!r} is not valid")

    aadhaar = digits_only(values["aadhaar"])
    if len(aadhaar) != 12:
        raise InvalidAadhaarLength(f"Aadhaar must have 12 digits, got {len(aadhaar)}")

    ifsc = values["ifsc"].upper().replace(" ", "")
    flags = {
        "ifsc_format_ok": bool(IFSC_RE.match(ifsc)),
        "kyc_mismatch": ifsc_bank_mismatch(ifsc, values["bank_name"]),
    }

    snapshot = {
        "account_holder": values["account_holder"],
        "bank_account": re.sub(r"\s", "", values["bank_account"]),
        "ifsc": ifsc,
        "bank_name": values["bank_name"],
        "city": values["city"],
        "upi_id": upi_id or None,
        "aadhaar_masked": mask_aadhaar(aadhaar),
        "pan": values["pan"].upper(),
    }
    return snapshot, flags
