from datetime import datetime, timedelta, timezone

from graph.state import IntakeDeps
from tools.stores import InMemoryClassificationStore, InMemoryLeadStore, InMemoryUserDataStore
from tools.tokens import InMemoryTokenStore, TokenAuthority

PHONE = "+15551234999"

FULL_FORM = {
    "phoneNumber": PHONE,
    "name": "Margaret Wilson",
    "email": "margaret.wilson@example.com",
    "city": "Baltimore",
    "age": 68,
    "dateOfBirth": "1956-03-15",
    "medicareNumber": "1EG4-TE5-MK73",
    "ssnLast4": "1234",
    "planLevel": "Advantage",
    "hasColorblindness": True,
    "colorblindType": "red-green",
    "currentEyewear": "glasses",
    "medicalHistory": ["hypertension", "type 2 diabetes"],
    "currentMedications": ["lisinopril"],
}

class FakeClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self):
        self.now = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)

def make_deps(clock=None) -> IntakeDeps:
    clock = clock or FakeClock()
    return IntakeDeps(
        tokens=TokenAuthority(InMemoryTokenStore(), ttl=timedelta(minutes=30), clock=clock),
        leads=InMemoryLeadStore(),
        user_data=InMemoryUserDataStore(),
        classifications=InMemoryClassificationStore(),
        clock=clock,
    )
