"""Initial slice values used when nothing is stored locally or remotely."""
from typing import List, Tuple

from portal.domain import BuildingInfo, Contact, Flat, RecurringExpense, Role, User

FLOORS = 8
FLATS_PER_FLOOR = 6
FLAT_MAINTENANCE = 6000
PENTHOUSE_IDS = ("902", "903", "905")
PENTHOUSE_MAINTENANCE = 8000

# flats with a negotiated maintenance charge
MAINTENANCE_OVERRIDES = {"205": 1500}

SPECIAL_PROPERTIES = (
    ("M-01", "Mezzanine Floor", 25000),
    ("G-01", "Ground Floor", 40000),
)

STAFF: Tuple[User, ...] = (
    User(id="admin", role=Role.ADMIN, owner_name="Arbab Khan", contact="0300-1234567", cash_on_hand=0),
    User(id="faisal", role=Role.ACCOUNTANT, owner_name="Faisal", contact="0300-1234568", cash_on_hand=0),
    User(id="tahir", role=Role.ACCOUNTS_CHECKER, owner_name="Tahir", contact="0300-1234569"),
    User(id="usman", role=Role.ACCOUNTS_CHECKER, owner_name="Usman", contact="0300-1234570"),
    User(id="rahman", role=Role.GUARD, owner_name="Rahman (Day)", salary=25000, cash_on_hand=0),
    User(id="nasir", role=Role.GUARD, owner_name="Nasir (Night)", salary=25000, cash_on_hand=0),
    User(id="waqas", role=Role.SWEEPER, owner_name="Waqas", salary=15000),
    User(id="mechanic1", role=Role.LIFT_MECHANIC, owner_name="Ali (Lift)", salary=10000),
)

RECURRING_EXPENSES: Tuple[RecurringExpense, ...] = (
    RecurringExpense("Lift Maintenance", 5000),
    RecurringExpense("Generator Fuel", 0),
    RecurringExpense("Sweeper Salary", 15000),
    RecurringExpense("Guard Salary (Day)", 25000),
    RecurringExpense("Guard Salary (Night)", 25000),
    RecurringExpense("K-Electric Common Bill", 0),
    RecurringExpense("Water Bill", 0),
)

CONTACTS: Tuple[Contact, ...] = (
    Contact("c1", "Building Manager", "Faisal", "0300-1234568"),
    Contact("c2", "Emergency Guard (Day)", "Rahman", "0311-1234567"),
    Contact("c3", "Emergency Guard (Night)", "Nasir", "0311-1234569"),
)

BUILDING_INFO = BuildingInfo(
    name="Al Ghafoor Eden",
    address="Plot No. 1/28, Block A Block 1 Nazimabad, Karachi, 74600, Pakistan",
    total_flats=48,
    total_penthouses=3,
    total_shops=0,
    total_offices=0,
    mezzanine_details="Gym and Community Hall",
    parking_capacity=50,
    total_floors=8,
    flats_per_floor=6,
)

PRESIDENT_MESSAGE = "Welcome to the Al Ghafoor Eden Community Portal."


def _owner(flat_id: str, label: str) -> User:
    return User(
        id=f"{flat_id}own",
        role=Role.RESIDENT,
        owner_name=f"Owner of {label}",
        contact=f"0300-11{flat_id.replace('-', '')}",
    )


def build_flats_and_owners() -> Tuple[Tuple[Flat, ...], Tuple[User, ...]]:
    """Generate every property of the building plus one owner user per property."""
    flats: List[Flat] = []
    owners: List[User] = []

    for floor in range(1, FLOORS + 1):
        for num in range(1, FLATS_PER_FLOOR + 1):
            flat_id = f"{floor}0{num}"
            maintenance = MAINTENANCE_OVERRIDES.get(flat_id, FLAT_MAINTENANCE)
            flats.append(Flat(id=flat_id, label=f"Flat {flat_id}", floor=floor, monthly_maintenance=maintenance))
            owners.append(_owner(flat_id, flat_id))

    for flat_id in PENTHOUSE_IDS:
        flats.append(Flat(id=flat_id, label=f"Penthouse {flat_id}", floor=9, monthly_maintenance=PENTHOUSE_MAINTENANCE))
        owners.append(_owner(flat_id, flat_id))

    for flat_id, label, maintenance in SPECIAL_PROPERTIES:
        flats.append(Flat(id=flat_id, label=label, floor=0, monthly_maintenance=maintenance))
        owners.append(_owner(flat_id, label))

    return tuple(flats), tuple(owners)


def initial_users_and_flats() -> Tuple[Tuple[User, ...], Tuple[Flat, ...]]:
    flats, owners = build_flats_and_owners()
    return STAFF + owners, flats
