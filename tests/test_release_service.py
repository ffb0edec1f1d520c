from types import SimpleNamespace

import pytest

from clubshares.errors import AuthorizationError, ValidationError
from clubshares.extensions import db
from clubshares.models import (
    AllocationStatus, ClubShareHoldingAccount, ClubShareReleaseLog, HoldingStatus,
    ReleaseTrigger, UserShareHolding
)
from clubshares.services import batch_service, release_service
from clubshares.services.release_service import plan_proportional_release


def _claim(allocation_id, shares, member_id=None):
    return SimpleNamespace(id=allocation_id, club_member_id=member_id or allocation_id,
                           allocated_shares=shares)


# ============== PLANNING ==============

def test_plan_floors_each_share_and_keeps_shortfall():
    plan = plan_proportional_release([_claim(1, 100), _claim(2, 250), _claim(3, 650)], 333)

    assert plan.total_pool == 1000
    assert [entry.shares for entry in plan.entries] == [33, 83, 216]
    assert plan.planned_total == 332
    assert plan.shortfall == 1
    assert plan.skipped == []


def test_plan_orders_by_member_then_allocation():
    plan = plan_proportional_release(
        [_claim(5, 10, member_id=2), _claim(3, 10, member_id=1), _claim(4, 10, member_id=1)], 30
    )
    assert [entry.allocation_id for entry in plan.entries] == [3, 4, 5]


def test_plan_skips_zero_shares():
    plan = plan_proportional_release([_claim(1, 1), _claim(2, 999)], 10)

    assert plan.skipped == [1]
    assert [(entry.allocation_id, entry.shares) for entry in plan.entries] == [(2, 9)]
    assert plan.shortfall == 1


@pytest.mark.parametrize('quantities, requested', [
    ([1, 1, 1], 2),
    ([7, 11, 13, 17], 100),
    ([3, 5], 1),
    ([100000, 1, 2], 99999),
])
def test_plan_never_exceeds_request(quantities, requested):
    claims = [_claim(i, q) for i, q in enumerate(quantities, start=1)]
    plan = plan_proportional_release(claims, requested)

    expected = sum((q * requested) // sum(quantities) for q in quantities)
    assert plan.planned_total == expected
    assert plan.planned_total <= requested
    assert plan.shortfall == requested - expected


def test_plan_with_empty_pool():
    plan = plan_proportional_release([], 50)
    assert plan.entries == []
    assert plan.shortfall == 50


@pytest.mark.parametrize('quantity', [0, -5, 2.5, True, '10'])
def test_plan_rejects_bad_quantity(quantity):
    with pytest.raises(ValidationError):
        plan_proportional_release([_claim(1, 10)], quantity)


# ============== BULK RELEASE ==============

def test_bulk_release_queues_tranches(make_allocation, admin):
    small = make_allocation(shares=100)
    medium = make_allocation(shares=250)
    large = make_allocation(shares=650)
    make_allocation(shares=5000, status=AllocationStatus.PENDING_CONSENT)

    plan, result = release_service.bulk_release(333, 'Market window', admin)

    assert plan.total_pool == 1000
    assert plan.shortfall == 1
    assert result.succeeded == 3
    assert result.failed == 0

    for allocation, shares in ((small, 33), (medium, 83), (large, 216)):
        assert allocation.allocation_status == AllocationStatus.PENDING_RELEASE
        log = allocation.release_logs.one()
        assert log.shares_released == shares
        assert log.release_trigger == ReleaseTrigger.BULK_RELEASE
        assert log.release_reason == 'Market window'
        assert log.market_ratio_data['total_pool'] == 1000
        assert log.market_ratio_data['requested_quantity'] == 333
        # Each tranche gets its own holding; the import escrow is untouched
        tranche = allocation.queued_tranche()
        assert tranche.is_tranche
        assert tranche.shares_quantity == shares
        assert tranche.shares_released == 0
        assert log.club_holding_account_id == tranche.id
        assert allocation.holding_accounts.count() == 2
        assert allocation.escrow_holding_account().shares_released == 0

    assert small.release_logs.one().release_percentage == pytest.approx(33.0)
    assert small.release_logs.one().market_ratio_data['member_ratio'] == pytest.approx(0.1)


def test_bulk_release_creates_tranche_holding_when_missing(make_allocation, admin):
    allocation = make_allocation(shares=40, with_holding=False)

    release_service.bulk_release(20, 'First tranche', admin)

    holding = allocation.holding_accounts.one()
    assert holding.is_tranche
    assert holding.shares_quantity == 20
    assert holding.status == HoldingStatus.HOLDING
    assert allocation.queued_tranche_id == holding.id
    assert allocation.release_logs.one().club_holding_account_id == holding.id


def test_bulk_release_skips_allocations_changed_after_planning(make_allocation, admin, monkeypatch):
    first = make_allocation(shares=100)
    moved = make_allocation(shares=100)
    plan = release_service.preview_bulk_release(50)

    moved.allocation_status = AllocationStatus.RELEASED_FULLY
    db.session.commit()
    monkeypatch.setattr(release_service, 'preview_bulk_release', lambda quantity: plan)

    _, result = release_service.bulk_release(50, 'Race', admin)

    assert result.succeeded == 1
    assert result.skipped == 1
    assert first.release_logs.count() == 1
    assert moved.release_logs.count() == 0


def test_bulk_release_requires_reason(make_allocation, admin):
    make_allocation(shares=100)
    with pytest.raises(ValidationError):
        release_service.bulk_release(10, '', admin)


def test_bulk_release_requires_admin(make_allocation, regular_user):
    make_allocation(shares=100)
    with pytest.raises(AuthorizationError):
        release_service.bulk_release(10, 'Nope', regular_user)
    assert ClubShareReleaseLog.query.count() == 0


# ============== FULL RELEASE ==============

def test_release_full_credits_tradable_holding(make_allocation, make_user, admin):
    user = make_user()
    allocation = make_allocation(shares=120, user_id=user.id)

    result = release_service.release_full([allocation.id], admin)

    assert result.succeeded == 1
    assert allocation.allocation_status == AllocationStatus.RELEASED_FULLY

    holding = allocation.holding_accounts.one()
    assert holding.shares_released == 120
    assert holding.shares_remaining == 0
    assert holding.status == HoldingStatus.FULLY_RELEASED

    tradable = UserShareHolding.query.filter_by(user_id=user.id).one()
    assert tradable.quantity == 120
    assert tradable.purchase_price_per_share == 0
    assert tradable.currency == 'UGX'
    assert tradable.source_allocation_id == allocation.id

    log = allocation.release_logs.one()
    assert log.release_trigger == ReleaseTrigger.MANUAL_ADMIN
    assert log.release_percentage == 100
    assert log.user_share_holding_id == tradable.id
    assert log.released_by == admin


def test_release_full_is_idempotent(make_allocation, make_user, admin):
    allocation = make_allocation(shares=50, user_id=make_user().id)
    release_service.release_full([allocation.id], admin)

    again = release_service.release_full([allocation.id], admin)

    assert again.skipped == 1
    assert again.succeeded == 0
    assert ClubShareReleaseLog.query.count() == 1
    assert UserShareHolding.query.count() == 1
    assert allocation.holding_accounts.one().shares_released == 50


def test_release_full_isolates_member_failures(make_allocation, make_user, admin):
    ok = make_allocation(shares=10, user_id=make_user().id)
    unlinked = make_allocation(shares=10)
    no_holding = make_allocation(shares=10, user_id=make_user().id, with_holding=False)
    not_accepted = make_allocation(shares=10, status=AllocationStatus.PENDING_CONSENT)

    result = release_service.release_full([ok.id, unlinked.id, no_holding.id, not_accepted.id, 999], admin)

    assert result.succeeded == 1
    assert result.failed == 3
    assert result.skipped == 1
    assert result.summary() == '1 succeeded, 3 failed, 1 skipped'
    assert unlinked.allocation_status == AllocationStatus.ACCEPTED
    assert unlinked.holding_accounts.one().shares_released == 0


def _tradable_total(allocation_id):
    return sum(h.quantity for h in UserShareHolding.query.filter_by(source_allocation_id=allocation_id))


def test_release_full_after_bulk_tranche_settles_only_the_tranche(make_allocation, make_user, admin):
    allocation = make_allocation(shares=100, user_id=make_user().id)
    release_service.bulk_release(40, 'Tranche', admin)
    assert allocation.allocation_status == AllocationStatus.PENDING_RELEASE
    tranche = allocation.queued_tranche()

    result = release_service.release_full([allocation.id], admin)

    assert result.succeeded == 1
    assert _tradable_total(allocation.id) == 40
    assert allocation.allocation_status == AllocationStatus.RELEASED_PARTIALLY
    assert tranche.status == HoldingStatus.FULLY_RELEASED
    assert allocation.escrow_holding_account().shares_released == 40
    assert allocation.queued_tranche_id is None

    log = allocation.release_logs.order_by(ClubShareReleaseLog.id.desc()).first()
    assert log.club_holding_account_id == tranche.id
    assert log.shares_released == 40
    assert log.release_percentage == 100

    # Nothing queued any more: the rest comes out of the escrow
    second = release_service.release_full([allocation.id], admin)

    assert second.succeeded == 1
    assert _tradable_total(allocation.id) == 100
    assert allocation.allocation_status == AllocationStatus.RELEASED_FULLY
    assert allocation.escrow_holding_account().status == HoldingStatus.FULLY_RELEASED
    assert allocation.release_logs.count() == 3


def test_release_partial_draws_on_queued_tranche(make_allocation, make_user, admin):
    allocation = make_allocation(shares=100, user_id=make_user().id)
    release_service.bulk_release(40, 'Tranche', admin)
    tranche = allocation.queued_tranche()

    release_service.release_partial([allocation.id], 'percentage', 50, admin, 'Half the tranche')

    assert _tradable_total(allocation.id) == 20
    assert tranche.shares_released == 20
    assert allocation.escrow_holding_account().shares_released == 20
    assert allocation.queued_tranche_id == tranche.id
    assert allocation.allocation_status == AllocationStatus.RELEASED_PARTIALLY

    release_service.release_full([allocation.id], admin)

    assert _tradable_total(allocation.id) == 40
    assert allocation.queued_tranche_id is None


def test_release_full_after_partial_logs_hundred_percent(make_allocation, make_user, admin):
    allocation = make_allocation(shares=100, user_id=make_user().id)
    release_service.release_partial([allocation.id], 'percentage', 25, admin, 'Quarter')

    release_service.release_full([allocation.id], admin)

    logs = allocation.release_logs.order_by(ClubShareReleaseLog.id).all()
    assert [log.shares_released for log in logs] == [25, 75]
    assert logs[0].release_percentage == pytest.approx(25.0)
    assert logs[1].release_percentage == 100
    assert allocation.allocation_status == AllocationStatus.RELEASED_FULLY


def test_bulk_release_fails_allocation_deleted_after_planning(make_allocation, make_user, admin, monkeypatch):
    gone = make_allocation(shares=100, batch='GONE', user_id=make_user().id)
    kept = make_allocation(shares=100, batch='KEEP', user_id=make_user().id)
    gone_id = gone.id
    plan = release_service.preview_bulk_release(50)

    batch_service.delete_batch('GONE', admin)
    monkeypatch.setattr(release_service, 'preview_bulk_release', lambda quantity: plan)

    _, result = release_service.bulk_release(50, 'Race', admin)

    assert result.succeeded == 1
    assert result.failed == 1
    assert result.skipped == 0
    assert ClubShareReleaseLog.query.filter_by(club_allocation_id=gone_id).count() == 0
    assert ClubShareHoldingAccount.query.filter_by(club_allocation_id=gone_id).count() == 0
    assert kept.release_logs.count() == 1


# ============== PARTIAL RELEASE ==============

def test_release_partial_by_percentage_then_absolute(make_allocation, make_user, admin):
    allocation = make_allocation(shares=100, user_id=make_user().id)

    first = release_service.release_partial([allocation.id], 'percentage', 25, admin, 'Quarter')

    assert first.succeeded == 1
    holding = allocation.holding_accounts.one()
    assert holding.shares_released == 25
    assert holding.status == HoldingStatus.PARTIALLY_RELEASED
    assert allocation.allocation_status == AllocationStatus.RELEASED_PARTIALLY

    second = release_service.release_partial([allocation.id], 'absolute', 500, admin, 'Rest')

    assert second.succeeded == 1
    assert holding.shares_released == 100
    assert allocation.allocation_status == AllocationStatus.RELEASED_FULLY
    assert [log.shares_released for log in allocation.release_logs.order_by(ClubShareReleaseLog.id)] == [25, 75]
    assert sum(h.quantity for h in UserShareHolding.query.all()) == 100


def test_release_partial_percentage_floors(make_allocation, make_user, admin):
    allocation = make_allocation(shares=10, user_id=make_user().id)

    release_service.release_partial([allocation.id], 'percentage', 33, admin, 'Floor')

    assert allocation.holding_accounts.one().shares_released == 3


def test_release_partial_nothing_to_release_is_skipped(make_allocation, make_user, admin):
    allocation = make_allocation(shares=2, user_id=make_user().id)

    result = release_service.release_partial([allocation.id], 'percentage', 10, admin, 'Tiny')

    assert result.skipped == 1
    assert allocation.allocation_status == AllocationStatus.ACCEPTED
    assert ClubShareHoldingAccount.query.one().shares_released == 0


@pytest.mark.parametrize('mode, value', [
    ('fraction', 10),
    ('percentage', 0),
    ('percentage', 101),
    ('absolute', -3),
    ('absolute', 2.5),
])
def test_release_partial_rejects_bad_input(make_allocation, admin, mode, value):
    allocation = make_allocation(shares=10)
    with pytest.raises(ValidationError):
        release_service.release_partial([allocation.id], mode, value, admin, 'Bad')
