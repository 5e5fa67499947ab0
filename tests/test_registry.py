from datetime import date
from decimal import Decimal

import pytest

from asset_tracker import db
from asset_tracker.errors import AuthorizationError, NotFoundError, ValidationError
from asset_tracker.models import Asset, AuditEntry
from asset_tracker.principal import Principal
from asset_tracker.services import audit, custody, registry, scan
from asset_tracker.services.registry import AssetPatch
from asset_tracker.storage import get_object_store


def actions_for(asset_id):
    return [e.action for e in audit.recent(limit=100, asset_id=asset_id)]


def assert_custody_invariant():
    for asset in Asset.query.all():
        assert (asset.status == 'In Use') == (asset.custodian_id is not None), asset
        if asset.status == 'Available':
            assert asset.custodian_id is None


def test_create_defaults_to_available(make_asset):
    asset = make_asset()

    assert asset.status == 'Available'
    assert asset.custodian_id is None
    assert asset.custodian_name is None
    assert asset.date_assigned is None
    assert asset.scan_code.startswith(f'AST-{asset.id}-')
    assert asset.scan_payload['code'] == asset.scan_code
    assert asset.scan_payload['name'] == 'Dell Laptop'
    assert get_object_store().exists(asset.qr_image_ref)
    assert actions_for(asset.id) == ['created']


def test_create_canonicalizes_status_and_extra_fields(make_asset):
    asset = make_asset(status='reservable', category='IT', purchase_date='2024-03-01',
                       purchase_price='1,299.5', serial_number=' SN-1 ')

    assert asset.status == 'Reservable'
    assert asset.category == 'IT'
    assert asset.purchase_date == date(2024, 3, 1)
    assert asset.purchase_price == Decimal('1299.50')
    assert asset.serial_number == 'SN-1'


@pytest.mark.parametrize('missing', ['name', 'type', 'location'])
def test_create_requires_text_fields(make_asset, missing):
    with pytest.raises(ValidationError) as exc:
        make_asset(**{missing: '   '})
    assert exc.value.field == missing
    assert Asset.query.count() == 0


def test_create_rejects_bad_status(make_asset):
    with pytest.raises(ValidationError) as exc:
        make_asset(status='Retired')
    assert exc.value.field == 'status'


def test_create_with_custodian_is_in_use(make_asset, jdoe):
    asset = make_asset(custodian_id=jdoe.id)

    assert asset.status == 'In Use'
    assert asset.custodian_name == 'jdoe'
    assert asset.date_assigned is not None
    assert actions_for(asset.id) == ['created']


def test_create_rejects_inconsistent_custody(make_asset, jdoe):
    with pytest.raises(ValidationError):
        make_asset(status='In Use')
    with pytest.raises(ValidationError):
        make_asset(status='Available', custodian_id=jdoe.id)
    with pytest.raises(NotFoundError):
        make_asset(custodian_id=9999)


def test_scan_codes_are_unique(make_asset):
    assets = [make_asset(name=f'Laptop {i}') for i in range(5)]
    codes = {a.scan_code for a in assets}

    assert len(codes) == 5
    for asset in assets:
        assert Asset.query.filter_by(scan_code=asset.scan_code).one().id == asset.id


def test_update_display_field_regenerates_scan_code(make_asset, admin):
    asset = make_asset()
    old_code, old_qr = asset.scan_code, asset.qr_image_ref

    updated = registry.update_asset(asset.id, {'location': 'Floor 2'}, admin)

    assert updated.location == 'Floor 2'
    assert updated.scan_code != old_code
    assert updated.scan_payload['location'] == 'Floor 2'
    assert not get_object_store().exists(old_qr)
    with pytest.raises(NotFoundError):
        scan.resolve(old_code, admin)
    assert scan.resolve(updated.scan_code, admin).id == asset.id


def test_update_other_field_keeps_scan_code(make_asset, admin):
    asset = make_asset()
    code = asset.scan_code

    updated = registry.update_asset(asset.id, AssetPatch(serial_number='SN-42'), admin)

    assert updated.serial_number == 'SN-42'
    assert updated.scan_code == code


def test_update_emits_one_entry_without_status_change(make_asset, admin):
    asset = make_asset()

    registry.update_asset(asset.id, {'name': 'Dell Latitude', 'location': 'Floor 3'}, admin)

    assert actions_for(asset.id) == ['updated', 'created']
    entry = audit.recent(limit=1, asset_id=asset.id)[0]
    assert "name 'Dell Laptop' -> 'Dell Latitude'" in entry.details
    assert "location 'Floor 1' -> 'Floor 3'" in entry.details


@pytest.mark.parametrize('status, action', [
    ('Under Maintenance', 'maintenance'),
    ('reservable', 'available'),
])
def test_status_change_emits_two_entries(make_asset, admin, status, action):
    asset = make_asset()

    registry.update_asset(asset.id, {'status': status}, admin)

    assert actions_for(asset.id) == [action, 'updated', 'created']


def test_update_assigning_custodian_sets_in_use(make_asset, admin, jdoe):
    asset = make_asset()

    updated = registry.update_asset(asset.id, {'custodian_id': jdoe.id}, admin)

    assert updated.status == 'In Use'
    assert updated.custodian_name == 'jdoe'
    assert updated.date_assigned is not None
    assert actions_for(asset.id) == ['assigned', 'updated', 'created']
    assert_custody_invariant()


def test_update_clearing_custodian_makes_available(make_asset, admin, jdoe):
    asset = make_asset(custodian_id=jdoe.id)

    updated = registry.update_asset(asset.id, {'custodian_id': None}, admin)

    assert updated.status == 'Available'
    assert updated.custodian_id is None
    assert updated.date_assigned is None
    assert actions_for(asset.id)[0] == 'unassigned'
    assert_custody_invariant()


def test_update_status_away_from_in_use_clears_custodian(make_asset, admin, jdoe):
    asset = make_asset(custodian_id=jdoe.id)

    updated = registry.update_asset(asset.id, {'status': 'Under Maintenance'}, admin)

    assert updated.custodian_id is None
    assert updated.custodian_name is None
    assert updated.previous_custodian_name == 'jdoe'
    assert_custody_invariant()


def test_update_rejects_inconsistent_custody(make_asset, admin, jdoe):
    asset = make_asset()

    with pytest.raises(ValidationError):
        registry.update_asset(asset.id, {'status': 'In Use'}, admin)
    with pytest.raises(ValidationError):
        registry.update_asset(asset.id, {'custodian_id': jdoe.id, 'status': 'Reservable'}, admin)
    with pytest.raises(ValidationError):
        registry.update_asset(asset.id, {'custodian_name': 'someone'}, admin)
    with pytest.raises(ValidationError):
        registry.update_asset(asset.id, {'scan_code': 'AST-1-FFFF'}, admin)
    with pytest.raises(ValidationError):
        registry.update_asset(asset.id, {'name': ''}, admin)

    db.session.expire_all()
    assert registry.get_asset(asset.id).status == 'Available'
    assert actions_for(asset.id) == ['created']


def test_noop_update_changes_nothing(make_asset, admin):
    asset = make_asset()
    version, code = asset.version, asset.scan_code

    registry.update_asset(asset.id, {'name': 'Dell Laptop'}, admin)

    assert asset.version == version
    assert asset.scan_code == code
    assert actions_for(asset.id) == ['created']


def test_update_unknown_asset(admin):
    with pytest.raises(NotFoundError):
        registry.update_asset(404, {'name': 'x'}, admin)


def test_delete_removes_record_and_files(make_asset, admin):
    asset = make_asset()
    asset_id, qr_ref = asset.id, asset.qr_image_ref

    registry.delete_asset(asset_id, admin)

    assert db.session.get(Asset, asset_id) is None
    assert not get_object_store().exists(qr_ref)
    entries = AuditEntry.query.filter_by(asset_id=asset_id).order_by(AuditEntry.id).all()
    assert [e.action for e in entries] == ['created', 'deleted']
    assert entries[-1].asset_name == 'Dell Laptop'
    with pytest.raises(NotFoundError):
        registry.delete_asset(asset_id, admin)


def test_list_filters(make_asset, jdoe):
    make_asset(name='Laptop A')
    make_asset(name='Chair', type='Furniture', location='Floor 2', status='Reservable')
    held = make_asset(name='Van', type='Vehicle', custodian_id=jdoe.id)

    assert [a.name for a in registry.list_assets({'type': 'Furniture'})] == ['Chair']
    assert [a.name for a in registry.list_assets({'status': 'in use'})] == ['Van']
    assert len(registry.list_assets({'location': 'Floor 1'})) == 2
    assert [a.id for a in registry.list_assets({'custodian_id': jdoe.id})] == [held.id]
    assert [a.name for a in registry.list_assets({'q': 'lap'})] == ['Laptop A']
    assert len(registry.list_assets({'bogus': 'x', 'type': ''})) == 3


def test_asset_counts(make_asset, jdoe):
    make_asset()
    make_asset(custodian_id=jdoe.id)

    counts = registry.asset_counts()

    assert counts['total'] == 2
    assert counts['assigned'] == 1
    assert counts['by_status']['In Use'] == 1
    assert counts['by_status']['Under Maintenance'] == 0
    assert counts['by_type'] == {'Laptop': 2}


def test_patch_to_maintenance_keeps_last_holder_name(make_asset, admin, jdoe):
    asset = make_asset(custodian_id=jdoe.id)

    updated = registry.update_asset(asset.id, {'custodian_id': None, 'status': 'Under Maintenance'}, admin)

    assert updated.status == 'Under Maintenance'
    assert updated.custodian_id is None
    assert updated.previous_custodian_name == 'jdoe'
    assert actions_for(asset.id)[0] == 'maintenance'


def test_writes_require_admin(make_asset, jdoe):
    asset = make_asset()
    user = Principal.from_user(jdoe)

    with pytest.raises(AuthorizationError):
        registry.create_asset({'name': 'X', 'type': 'Laptop', 'location': 'Floor 1'}, user)
    with pytest.raises(AuthorizationError):
        registry.update_asset(asset.id, {'location': 'Floor 2'}, user)
    with pytest.raises(AuthorizationError):
        registry.delete_asset(asset.id, user)
    with pytest.raises(AuthorizationError):
        custody.assign_to(asset.id, jdoe.id, user)
    with pytest.raises(AuthorizationError):
        custody.release(asset.id, user)

    assert Asset.query.count() == 1
    assert registry.get_asset(asset.id).location == 'Floor 1'
    assert actions_for(asset.id) == ['created']
