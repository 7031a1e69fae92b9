import pytest

from resort_club import staff
from resort_club.errors import ClubError


def test_pin_is_hashed_and_verified(db):
    created = staff.create_staff(db, "Gate One", "2468", "security")
    row = db.fetch_one("SELECT pin_hash, pin_salt FROM staff WHERE id = ?", (created["id"],))
    assert row["pin_hash"] != "2468"
    assert len(bytes.fromhex(row["pin_salt"])) == 16

    assert staff.verify_staff_pin(db, "2468") == {"id": created["id"], "name": "Gate One", "role": "security"}
    assert staff.verify_staff_pin(db, "2469") is None
    assert staff.verify_staff_pin(db, "") is None


def test_each_staff_member_keeps_their_role(db):
    staff.create_staff(db, "Front", "1111")
    staff.create_staff(db, "Boss", "2222", "admin")
    assert staff.verify_staff_pin(db, "1111")["role"] == "front_desk"
    assert staff.verify_staff_pin(db, "2222")["role"] == "admin"


@pytest.mark.parametrize("pin, role", [("12", "admin"), ("1234", "janitor")])
def test_create_staff_validation(db, pin, role):
    with pytest.raises(ClubError):
        staff.create_staff(db, "Someone", pin, role)


def test_role_allows():
    assert staff.role_allows("security", staff.CHECKIN_ROLES)
    assert not staff.role_allows("security", staff.ADMIN_ROLES)
    assert not staff.role_allows(None, staff.CHECKIN_ROLES)
