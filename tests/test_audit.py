from tripdesk.audit.lineage import AuditStore


def test_audit_history_ordering() -> None:
    store = AuditStore()
    store.reset()
    store.log(action="quote_created", component="quote_lifecycle", subject_reference="quote-1")
    store.log(action="quote_sent", component="quote_lifecycle", subject_reference="quote-1")
    store.log(action="booking_created", component="booking_orchestrator", subject_reference="BOOK-OTHER")
    store.log(action="quote_accepted", component="quote_lifecycle", subject_reference="quote-1")

    history = store.get_history("quote-1")
    assert [row.action for row in history] == ["quote_created", "quote_sent", "quote_accepted"]
    assert store.get_history("quote-2") == []


def test_audit_detail_defaults_to_empty() -> None:
    record = AuditStore().log(action="task_succeeded", component="job_runner", subject_reference="run-1:A")

    assert record.detail == {}


def test_audit_store_has_no_update_delete_methods() -> None:
    assert not hasattr(AuditStore, "update")
    assert not hasattr(AuditStore, "delete")
