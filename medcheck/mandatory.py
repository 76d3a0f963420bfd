"""
Mandatory-item checker.

Rule-based detection of the items a medical advertisement must carry:
institution name, address, phone number, department, doctor
qualification, and (where prices are mentioned) price disclosure.
Used when the external model is unavailable, so degraded results still
report mandatory items.
"""

from __future__ import annotations

import re
from typing import Optional

from medcheck.models import AdMetadata
from medcheck.schemas.llm_output import MandatoryItem, MandatoryItems, PriceDisclosure

_HOSPITAL_NAME = re.compile(r"[가-힣A-Za-z0-9]{1,20}\s?(의원|병원|클리닉|센터|의료원|메디컬)")
_ADDRESS = re.compile(
    r"(서울|부산|대구|인천|광주|대전|울산|세종|경기|강원|충북|충남|전북|전남|경북|경남|제주)"
    r"[가-힣\s]{0,10}?(특별시|광역시|특별자치시|도|시)?\s*[가-힣]+(구|군|시)\s*[가-힣0-9\-]+(로|길|동)"
)
_PHONE = re.compile(r"\d{2,4}[-.\s]?\d{3,4}[-.\s]?\d{4}")
_DEPARTMENTS = (
    "피부과", "성형외과", "치과", "안과", "한의원", "정형외과", "내과", "산부인과",
    "비뇨의학과", "이비인후과", "정신건강의학과", "재활의학과", "가정의학과", "소아청소년과",
)
_DEPARTMENT = re.compile("|".join(_DEPARTMENTS))
_DOCTOR = re.compile(r"(전문의|대표원장|원장|의학박사)\s*[가-힣]{0,4}")
_PRICE_MENTION = re.compile(r"\d[\d,]*\s*(만\s*)?원")
_PRICE_DISCLOSURE = re.compile(r"(비급여|진료비|가격\s*(안내|고지)|부가세\s*(포함|별도))")


def _phone(text: str) -> Optional[str]:
    for m in _PHONE.finditer(text):
        digits = re.sub(r"\D", "", m.group(0))
        if 8 <= len(digits) <= 12:
            return m.group(0)
    return None


def _item(match: Optional[re.Match]) -> MandatoryItem:
    if match is None:
        return MandatoryItem(found=False)
    return MandatoryItem(found=True, value=match.group(0).strip())


def check_mandatory_items(text: str, metadata: Optional[AdMetadata] = None) -> MandatoryItems:
    metadata = metadata or AdMetadata()

    hospital = _item(_HOSPITAL_NAME.search(text))
    if not hospital.found and metadata.hospital_name and metadata.hospital_name in text:
        hospital = MandatoryItem(found=True, value=metadata.hospital_name)

    department = _item(_DEPARTMENT.search(text))
    if not department.found and metadata.department and metadata.department in text:
        department = MandatoryItem(found=True, value=metadata.department)

    phone = _phone(text)
    price_applicable = bool(_PRICE_MENTION.search(text))
    disclosure = _PRICE_DISCLOSURE.search(text)

    return MandatoryItems(
        hospital_name=hospital,
        address=_item(_ADDRESS.search(text)),
        phone=MandatoryItem(found=phone is not None, value=phone),
        department=department,
        doctor_info=_item(_DOCTOR.search(text)),
        price_disclosure=PriceDisclosure(
            found=disclosure is not None,
            value=disclosure.group(0) if disclosure else None,
            applicable=price_applicable,
        ),
    )
