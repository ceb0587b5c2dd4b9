from __future__ import annotations

from .models import REGIONS, Region

_COUNTRY_TO_REGION: dict[str, Region] = {
    "CH": "CH",
    "LI": "CH",
    **{
        code: "EU"
        for code in (
            "AT DE FR IT ES PT NL BE LU GB IE DK SE FI NO IS PL CZ SK HU RO BG GR HR SI "
            "EE LV LT MT CY AL RS ME BA MK XK"
        ).split()
    },
    **{code: "US" for code in ("US", "CA", "MX")},
    **{code: "IN" for code in ("IN", "PK", "BD", "LK", "NP", "BT")},
    **{code: "ME" for code in ("AE", "SA", "QA", "KW", "OM", "BH", "JO", "LB", "IL", "IQ", "SY", "YE", "EG", "TR")},
}


def region_for_country(country_code: str | None) -> Region:
    code = str(country_code or "").strip().upper()
    return _COUNTRY_TO_REGION.get(code, "GLOBAL")


def normalize_region(value: str | None, *, default: Region = "GLOBAL") -> Region:
    code = str(value or "").strip().upper()
    if code in REGIONS:
        return code  # type: ignore[return-value]
    if len(code) == 2:
        return region_for_country(code)
    return default
