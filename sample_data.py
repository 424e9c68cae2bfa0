"""
Sample MVR payload generation for development and load testing.

All names and places are prefixed "Sample" so generated records can never be
mistaken for real subjects.

Usage:
    rng = random.Random(42)
    payload = generate_sample_mvr("D1234567890", rng)
"""

import random
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

FIRST_NAMES = ["Sample John", "Sample Jane", "Sample Robert", "Sample Maria", "Sample Michael",
               "Sample Sarah", "Sample David", "Sample Lisa", "Sample James", "Sample Ashley"]
LAST_NAMES = ["Sample Anderson", "Sample Johnson", "Sample Williams", "Sample Brown", "Sample Davis",
              "Sample Miller", "Sample Wilson", "Sample Moore", "Sample Taylor", "Sample Thomas"]
SEXES = ["M", "F"]
HEIGHTS = ["5'4\"", "5'5\"", "5'6\"", "5'7\"", "5'8\"", "5'9\"", "5'10\"", "5'11\"", "6'0\"", "6'1\"", "6'2\""]
HAIR_COLORS = ["Brown", "Black", "Blonde", "Red", "Gray", "Auburn", "Sandy"]
EYE_COLORS = ["Blue", "Brown", "Green", "Hazel", "Gray", "Amber"]
STATES = ["TX", "CA", "FL", "NY", "IL", "PA", "OH", "GA", "NC", "MI"]
CITIES = ["Sample City", "Sample Town", "Sample Heights", "Sample Valley", "Sample Springs", "Sample Park"]
STREETS = ["Sample Street", "Sample Avenue", "Sample Road", "Sample Drive", "Sample Lane", "Sample Boulevard"]
LICENSE_CLASSES = ["Class C", "Class A", "Class B", "Class M", "Class A CDL", "Class B CDL", "Class DJ"]
LICENSE_STATUSES = ["Valid", "Expired", "Suspended", "Revoked", "Restricted"]
RESTRICTIONS = ["None", "B - Corrective Lenses", "E - No Manual Transmission", "P - No Passengers",
                "K - CDL Intrastate Only"]

VIOLATION_CODES = ["22349A", "22450A", "22348B", "316.192", "316.183", "316.193", "545.351", "VTL 1180D", "VTL 1110A"]
VIOLATION_DESCRIPTIONS = [
    "Speeding 1-15 mph over limit", "Speeding 16-25 mph over limit", "Speeding 26+ mph over limit",
    "Failure to stop at stop sign", "Failure to yield right of way", "Following too closely",
    "Reckless driving", "Improper lane change", "Failure to obey traffic control device",
    "Driving under the influence",
]
ACCIDENT_CODES = ["A08", "A12", "A20", "A21", "A22", "A23", "A24", "A25"]
ACCIDENT_DESCRIPTIONS = [
    "Ran off road - right", "Ran off road - left", "Struck fixed object", "Struck parked vehicle",
    "Rear-end collision", "Side-swipe collision", "Head-on collision", "Improper backing",
]
CRIME_OFFENSES = ["316.193", "316.194", "322.34", "316.027", "316.061"]
CRIME_DESCRIPTIONS = [
    "Driving under the influence - first offense", "Driving under the influence - second offense",
    "Driving while license suspended", "Leaving scene of accident", "Hit and run - property damage",
]
WITHDRAWAL_TYPES = ["Suspension", "Revocation", "Cancellation", "Disqualification"]
WITHDRAWAL_REASONS = ["Point Accumulation", "DUI Conviction", "Failure to Pay Fines", "Medical Condition",
                      "Court Order", "Administrative Action"]
MEDICAL_CONDITIONS = ["None", "Corrective Lenses Required", "Hearing Aid Required", "Diabetes - Insulin Dependent",
                      "DOT Physical Current", "Prosthetic Aid", "Automatic Transmission Only"]
SYSTEM_USES = ["Employment Screening", "Insurance Review", "Court Ordered", "DOT Compliance", "Background Check"]
MVR_TYPES = ["Standard", "Comprehensive", "Commercial", "Complete History"]
PURPOSES = ["Background Check", "Rate Determination", "Legal Proceeding", "Employment Verification",
            "Insurance Application"]
TIME_FRAMES = ["3 Years", "5 Years", "7 Years", "10 Years"]

_CODE_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def _random_date(rng: random.Random, start: date, end: date) -> date:
    return start + timedelta(days=rng.randint(0, max((end - start).days, 0)))


def _random_year_date(rng: random.Random, start_year: int, end_year: int) -> date:
    return _random_date(rng, date(start_year, 1, 1), date(end_year, 12, 31))


def _random_code(rng: random.Random, prefix: str, length: int) -> str:
    return prefix + "".join(rng.choice(_CODE_ALPHABET) for _ in range(length))


def generate_sample_mvr(
    drivers_license_number: str,
    rng: Optional[random.Random] = None,
    today: Optional[date] = None
) -> Dict[str, Any]:
    """
    Build a realistic MVR payload with random history.

    Args:
        drivers_license_number: License number for the subject
        rng: Random source (seed it for reproducible output)
        today: Reference date for order/report dates

    Returns:
        Payload accepted by the ingestion endpoint's ``mvr`` field
    """
    rng = rng or random.Random()
    today = today or date.today()
    current_year = today.year

    birth_year = rng.randint(1950, 2006)
    issue_year = max(birth_year + 16, rng.randint(2010, current_year))
    expiration_year = issue_year + rng.randint(4, 8)

    first_name = rng.choice(FIRST_NAMES)
    last_name = rng.choice(LAST_NAMES)
    state = rng.choice(STATES)

    violations = []
    for _ in range(rng.randint(0, 5)):
        violation_date = _random_year_date(rng, 2020, current_year)
        violations.append({
            "violation_date": violation_date.isoformat(),
            "conviction_date": (violation_date + timedelta(days=rng.randint(30, 90))).isoformat(),
            "location": f"{rng.choice(CITIES)}, {state}",
            "points_assessed": rng.randint(1, 6),
            "violation_code": rng.choice(VIOLATION_CODES),
            "description": rng.choice(VIOLATION_DESCRIPTIONS),
        })

    withdrawals = []
    for _ in range(rng.randint(0, 2)):
        effective_date = _random_year_date(rng, 2020, current_year)
        withdrawals.append({
            "effective_date": effective_date.isoformat(),
            "eligibility_date": (effective_date + timedelta(days=30 * rng.randint(3, 12))).isoformat(),
            "action_type": rng.choice(WITHDRAWAL_TYPES),
            "reason": rng.choice(WITHDRAWAL_REASONS),
        })

    accidents = [
        {
            "accident_date": _random_year_date(rng, 2020, current_year).isoformat(),
            "location": f"{rng.choice(STREETS)}, {state}",
            "acd_code": rng.choice(ACCIDENT_CODES),
            "description": rng.choice(ACCIDENT_DESCRIPTIONS),
        }
        for _ in range(rng.randint(0, 3))
    ]

    crimes = []
    for _ in range(rng.randint(0, 2)):
        crime_date = _random_year_date(rng, 2020, current_year)
        crimes.append({
            "crime_date": crime_date.isoformat(),
            "conviction_date": (crime_date + timedelta(days=rng.randint(60, 180))).isoformat(),
            "offense_code": rng.choice(CRIME_OFFENSES),
            "description": rng.choice(CRIME_DESCRIPTIONS),
        })

    short_first = first_name.lower().replace("sample ", "")
    short_last = last_name.lower().replace("sample ", "")
    year_ago = today - timedelta(days=365)

    return {
        "drivers_license_number": drivers_license_number,
        "full_legal_name": f"{first_name} {last_name}",
        "birthdate": _random_year_date(rng, birth_year, birth_year).isoformat(),
        "weight": str(rng.randint(120, 300)),
        "sex": rng.choice(SEXES),
        "height": rng.choice(HEIGHTS),
        "hair_color": rng.choice(HAIR_COLORS),
        "eye_color": rng.choice(EYE_COLORS),
        "medical_information": rng.choice(MEDICAL_CONDITIONS),
        "address": f"{rng.randint(100, 9999)} {rng.choice(STREETS)}",
        "city": rng.choice(CITIES),
        "issued_state_code": state,
        "zip": str(rng.randint(10000, 99999)),
        "phone_number": f"555{rng.randint(1000000, 9999999)}",
        "email": f"{short_first}.{short_last}@example.com",

        "claim_number": _random_code(rng, "CLM-", 12),
        "order_id": _random_code(rng, "ORD-", 10),
        "order_date": _random_date(rng, year_ago, today).isoformat(),
        "report_date": _random_date(rng, year_ago, today).isoformat(),
        "reference_number": _random_code(rng, "REF-", 10),
        "system_use": rng.choice(SYSTEM_USES),
        "mvr_type": rng.choice(MVR_TYPES),
        "state_code": state,
        "purpose": rng.choice(PURPOSES),
        "time_frame": rng.choice(TIME_FRAMES),
        "is_certified": rng.random() > 0.3,
        "total_points": sum(v["points_assessed"] for v in violations),

        "license_class": rng.choice(LICENSE_CLASSES),
        "issue_date": _random_year_date(rng, issue_year, issue_year).isoformat(),
        "expiration_date": _random_year_date(rng, expiration_year, expiration_year).isoformat(),
        "status": rng.choice(LICENSE_STATUSES),
        "restrictions": rng.choice(RESTRICTIONS),

        "violations": sorted(violations, key=lambda v: v["violation_date"], reverse=True),
        "withdrawals": sorted(withdrawals, key=lambda w: w["effective_date"], reverse=True),
        "accidents": sorted(accidents, key=lambda a: a["accident_date"], reverse=True),
        "crimes": sorted(crimes, key=lambda c: c["crime_date"], reverse=True),
    }


def generate_clean_sample_mvr(drivers_license_number: str, rng: Optional[random.Random] = None,
                              today: Optional[date] = None) -> Dict[str, Any]:
    """A sample with no history: valid license, zero points."""
    payload = generate_sample_mvr(drivers_license_number, rng, today)
    payload.update({
        "violations": [],
        "withdrawals": [],
        "accidents": [],
        "crimes": [],
        "total_points": 0,
        "status": "Valid",
        "restrictions": "None",
        "medical_information": "None",
    })
    return payload


def generate_high_risk_sample_mvr(drivers_license_number: str, rng: Optional[random.Random] = None,
                                  today: Optional[date] = None) -> Dict[str, Any]:
    """A sample that always carries at least one serious violation."""
    rng = rng or random.Random()
    payload = generate_sample_mvr(drivers_license_number, rng, today)
    payload["status"] = "Suspended" if rng.random() > 0.5 else "Valid"
    if not payload["violations"]:
        payload["violations"] = [{
            "violation_date": "2023-08-15",
            "conviction_date": "2023-09-20",
            "location": "Sample City, TX",
            "points_assessed": 4,
            "violation_code": "22348B",
            "description": "Speeding 26+ mph over limit",
        }]
        payload["total_points"] = 4
    return payload


def generate_license_numbers(count: int, rng: Optional[random.Random] = None, prefix: str = "D") -> List[str]:
    """Distinct random license numbers (prefix plus ten digits)."""
    rng = rng or random.Random()
    numbers = set()
    while len(numbers) < count:
        numbers.add(f"{prefix}{rng.randint(0, 10**10 - 1):010d}")
    return sorted(numbers)
