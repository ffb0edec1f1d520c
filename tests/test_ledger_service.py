import pytest

from clubshares.errors import AuthorizationError, NotFoundError, ValidationError
from clubshares.models import AllocationStatus
from clubshares.services import ledger_service


def test_get_allocation_missing(app):
    with pytest.raises(NotFoundError):
        ledger_service.get_allocation(999)


def test_list_allocations_filters(make_allocation):
    accepted = make_allocation(status=AllocationStatus.ACCEPTED, batch='B1')
    make_allocation(status=AllocationStatus.PENDING_CONSENT, batch='B1')
    make_allocation(status=AllocationStatus.ACCEPTED, batch='B2')

    assert len(ledger_service.list_allocations()) == 3
    assert len(ledger_service.list_allocations(batch_reference='B1')) == 2

    in_b1 = ledger_service.list_allocations(status='accepted', batch_reference='B1')
    assert [a.id for a in in_b1] == [accepted.id]


def test_list_allocations_unknown_status(app):
    with pytest.raises(ValidationError):
        ledger_service.list_allocations(status='archived')


def test_update_member(make_member, admin):
    member = make_member(name='Old Name', email='old@example.com')

    updated = ledger_service.update_member(member.id, admin, member_name=' New Name ', email='New@Example.com')

    assert updated.member_name == 'New Name'
    assert updated.email == 'new@example.com'


def test_update_member_rejects_unknown_fields(make_member, admin):
    member = make_member()

    with pytest.raises(ValidationError):
        ledger_service.update_member(member.id, admin, user_id=5)


def test_update_member_requires_admin(make_member, regular_user):
    member = make_member(name='Kept')

    with pytest.raises(AuthorizationError):
        ledger_service.update_member(member.id, regular_user, member_name='Changed')
    assert ledger_service.get_member(member.id).member_name == 'Kept'


def test_status_summary(make_allocation):
    make_allocation(shares=100, status=AllocationStatus.ACCEPTED)
    make_allocation(shares=50, status=AllocationStatus.ACCEPTED)
    make_allocation(shares=10, status=AllocationStatus.REJECTED)

    summary = ledger_service.status_summary()

    assert summary['total_allocations'] == 3
    assert summary['total_shares'] == 160
    assert summary['by_status']['accepted'] == {'count': 2, 'shares': 150}
    assert summary['by_status']['rejected'] == {'count': 1, 'shares': 10}
    assert summary['by_status']['released_fully'] == {'count': 0, 'shares': 0}
