import pytest
from sqlalchemy import update

from asset_tracker import db
from asset_tracker.errors import ConflictError, NotFoundError
from asset_tracker.models import Asset
from asset_tracker.services import audit, custody, registry, scan


def actions_for(asset_id):
    return [e.action for e in audit.recent(limit=100, asset_id=asset_id)]


def competing_write(monkeypatch, **values):
    """Commit ``values`` from another connection right after the first read."""
    real_get_asset = registry.get_asset
    reads = []

    def get_asset(asset_id):
        asset = real_get_asset(asset_id)
        if not reads:
            reads.append(asset.version)
            table = Asset.__table__
            with db.engine.begin() as conn:
                conn.execute(update(table).where(table.c.id == asset_id)
                             .values(version=table.c.version + 1, **values))
        return asset

    monkeypatch.setattr(registry, 'get_asset', get_asset)
    return reads


def test_assign_available_asset(make_asset, admin, jdoe):
    asset = make_asset()

    assigned = custody.assign_to(asset.id, jdoe.id, admin)

    assert assigned.status == 'In Use'
    assert assigned.custodian_id == jdoe.id
    assert assigned.custodian_name == 'jdoe'
    assert assigned.date_assigned is not None
    entries = audit.recent(limit=100, asset_id=asset.id)
    assert [e.action for e in entries] == ['assigned', 'created']
    assert 'jdoe' in entries[0].details
    assert entries[0].actor_name == 'admin'


def test_assign_with_display_name(make_asset, admin, jdoe):
    asset = make_asset()

    assigned = custody.assign_to(asset.id, jdoe.id, admin, user_name='John Doe')

    assert assigned.custodian_name == 'John Doe'


def test_assign_same_user_twice_conflicts(make_asset, admin, jdoe):
    asset = make_asset(custodian_id=jdoe.id)

    with pytest.raises(ConflictError):
        custody.assign_to(asset.id, jdoe.id, admin)

    assert actions_for(asset.id) == ['created']


def test_reassign_mentions_previous_holder(make_asset, admin, jdoe, alice):
    asset = make_asset(custodian_id=jdoe.id)
    first_assigned = asset.date_assigned

    assigned = custody.assign_to(asset.id, alice.id, admin)

    assert assigned.custodian_name == 'alice'
    assert assigned.date_assigned >= first_assigned
    entry = audit.recent(limit=1, asset_id=asset.id)[0]
    assert entry.action == 'assigned'
    assert '(previously jdoe)' in entry.details


def test_assign_unknown_user_or_asset(make_asset, admin, jdoe):
    asset = make_asset()

    with pytest.raises(NotFoundError) as exc:
        custody.assign_to(asset.id, 999, admin)
    assert exc.value.field == 'user_id'
    with pytest.raises(NotFoundError):
        custody.assign_to(999, jdoe.id, admin)


def test_unassign(make_asset, admin, jdoe):
    asset = make_asset(custodian_id=jdoe.id)

    released = custody.unassign(asset.id, admin)

    assert released.status == 'Available'
    assert released.custodian_id is None
    assert released.date_assigned is None
    entry = audit.recent(limit=1, asset_id=asset.id)[0]
    assert entry.action == 'unassigned'
    assert entry.details == 'Unassigned Dell Laptop from jdoe'


def test_unassign_free_asset_conflicts(make_asset, admin):
    asset = make_asset()

    with pytest.raises(ConflictError):
        custody.unassign(asset.id, admin)
    assert actions_for(asset.id) == ['created']


def test_maintenance_keeps_last_holder_name(make_asset, admin, jdoe):
    asset = make_asset(custodian_id=jdoe.id)

    repaired = custody.enter_maintenance(asset.id, admin)

    assert repaired.status == 'Under Maintenance'
    assert repaired.custodian_id is None
    assert repaired.custodian_name is None
    assert repaired.previous_custodian_name == 'jdoe'
    entry = audit.recent(limit=1, asset_id=asset.id)[0]
    assert entry.action == 'maintenance'
    assert 'last held by jdoe' in entry.details

    with pytest.raises(ConflictError):
        custody.enter_maintenance(asset.id, admin)


def test_release_from_maintenance(make_asset, admin, jdoe):
    asset = make_asset(custodian_id=jdoe.id)
    custody.enter_maintenance(asset.id, admin)

    released = custody.release(asset.id, admin)

    assert released.status == 'Available'
    assert released.previous_custodian_name is None
    assert actions_for(asset.id) == ['available', 'maintenance', 'created']

    with pytest.raises(ConflictError):
        custody.release(asset.id, admin)


def test_release_reservable(make_asset, admin):
    asset = make_asset(status='Reservable')

    released = custody.release(asset.id, admin)

    assert released.status == 'Available'
    entry = audit.recent(limit=1, asset_id=asset.id)[0]
    assert entry.details == 'Dell Laptop released from Reservable to Available'


def test_assign_from_maintenance_clears_previous_holder(make_asset, admin, jdoe, alice):
    asset = make_asset(custodian_id=jdoe.id)
    custody.enter_maintenance(asset.id, admin)

    assigned = custody.assign_to(asset.id, alice.id, admin)

    assert assigned.custodian_name == 'alice'
    assert assigned.previous_custodian_name is None


def test_transitions_retire_old_scan_code(make_asset, admin, jdoe):
    asset = make_asset()
    old_code = asset.scan_code

    assigned = custody.assign_to(asset.id, jdoe.id, admin)

    assert assigned.scan_code != old_code
    assert assigned.scan_payload['custodian'] == 'jdoe'
    assert assigned.scan_payload['status'] == 'In Use'
    with pytest.raises(NotFoundError):
        scan.resolve(old_code, admin)


def test_release_all_for_user(make_asset, admin, jdoe, alice):
    first = make_asset(name='Laptop', custodian_id=jdoe.id)
    second = make_asset(name='Phone', custodian_id=jdoe.id)
    other = make_asset(name='Monitor', custodian_id=alice.id)

    released = custody.release_all_for_user(jdoe.id, admin)

    assert released == [first.id, second.id]
    assert registry.list_assets({'custodian_id': jdoe.id}) == []
    assert registry.get_asset(other.id).custodian_name == 'alice'
    assert actions_for(first.id)[0] == 'unassigned'


def test_concurrent_custody_change_wins(make_asset, admin, jdoe, alice, monkeypatch):
    asset = make_asset()
    asset_id, alice_id = asset.id, alice.id
    competing_write(monkeypatch, status='In Use', custodian_id=alice_id, custodian_name='alice')

    with pytest.raises(ConflictError):
        custody.assign_to(asset_id, jdoe.id, admin)

    db.session.expire_all()
    current = db.session.get(Asset, asset_id)
    assert current.custodian_id == alice_id
    assert current.custodian_name == 'alice'
    assert actions_for(asset_id) == ['created']


def test_concurrent_non_custody_change_is_retried(make_asset, admin, jdoe, monkeypatch):
    asset = make_asset()
    asset_id = asset.id
    reads = competing_write(monkeypatch, location='Warehouse')

    assigned = custody.assign_to(asset_id, jdoe.id, admin)

    assert reads
    assert assigned.custodian_id == jdoe.id
    assert assigned.location == 'Warehouse'
    assert assigned.version > reads[0] + 1
    assert actions_for(asset_id) == ['assigned', 'created']
