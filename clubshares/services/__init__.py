"""
Services Package
================

Business logic layer for the club share workflow.

Import, consent, release and rollback all live here.
Routes should call these services, not manipulate models directly.
"""

from clubshares.services.ledger_service import (
    get_allocation,
    get_member,
    list_allocations,
    update_member,
    get_release_history,
    status_summary
)

from clubshares.services.import_service import (
    parse_number,
    validate_rows,
    import_allocations,
    ImportPreview,
    ImportResult
)

from clubshares.services.consent_service import (
    send_invitation,
    send_bulk_invitations,
    reset_allocation,
    record_consent_response,
    list_overdue_consents
)

from clubshares.services.release_service import (
    plan_proportional_release,
    preview_bulk_release,
    bulk_release,
    release_full,
    release_partial,
    ReleasePlan
)

from clubshares.services.batch_service import (
    list_batches,
    build_deletion_plan,
    delete_batch,
    RollbackResult
)

from clubshares.services.unit_of_work import (
    run_unit,
    run_batch,
    BatchResult,
    SkipUnit
)
