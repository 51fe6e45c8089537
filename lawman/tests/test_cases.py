"""
Tests for the Case Service
==========================

Field edits and the derived view attached to every case.
"""

from datetime import timedelta

import pytest

from lawman.cases import CaseService
from lawman.db.models import Priority
from lawman.db.session import new_session
from lawman.errors import InvalidRequest, VersionConflict


class TestUpdateCase:

    def test_edits_fields_and_bumps_version(self, db, intake_case):
        case = CaseService(db).update_case(intake_case.case_id, {"priority": "urgent", "title": "Appeal"})

        assert case.priority == Priority.URGENT
        assert case.title == "Appeal"
        assert case.version == 2

    @pytest.mark.parametrize("field", ["priority", "document_state"])
    def test_null_for_required_field_is_rejected(self, db, intake_case, field):
        service = CaseService(db)

        with pytest.raises(InvalidRequest) as exc_info:
            service.update_case(intake_case.case_id, {field: None, "title": "Changed"})

        assert exc_info.value.details == {"fields": [field]}
        other = new_session()
        try:
            stored = CaseService(other).get_case(intake_case.case_id)
            assert stored.version == 1
            assert stored.title == "Residence permit"
        finally:
            other.close()

    def test_optional_fields_can_be_cleared(self, db, intake_case, now):
        service = CaseService(db)
        service.update_case(intake_case.case_id, {"deadline": now})

        case = service.update_case(intake_case.case_id, {"deadline": None})

        assert case.deadline is None

    def test_stale_version_conflicts(self, db, intake_case):
        with pytest.raises(VersionConflict):
            CaseService(db).update_case(intake_case.case_id, {"title": "x"}, expected_version=5)


class TestCaseView:

    def test_view_carries_readiness_and_deadline_signal(self, db, intake_case, now):
        service = CaseService(db)
        service.update_case(intake_case.case_id, {"deadline": now + timedelta(hours=10)})
        service.add_task(intake_case.case_id, "Collect passport copy")

        view = service.case_view(intake_case, now=now)

        assert view["readiness"] == {"ready": False, "pending_tasks": 1, "sla_overdue": False}
        assert view["deadline_signal"]["type"] == "soon"

    def test_readiness_for_case_id(self, db, customer):
        service = CaseService(db)
        case = service.create_case(customer.customer_id, state="SEND_PROPOSAL")

        result = service.readiness(case.case_id)

        assert result.ready is True
        assert result.pending_tasks == 0
