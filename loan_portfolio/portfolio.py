"""
Loan Portfolio Service

Entry point for every portfolio operation. Each owner has one ledger,
persisted as a single document in the key-value store. Writes run under a
per-owner lock: the current ledger is copied, the change is applied and
enriched, the copy is persisted, and only then does it replace the cached
ledger. A failure at any step leaves the ledger as it was.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
from contextlib import contextmanager
import json
import logging
import threading
import uuid

from .alerts import generate_alerts, mark_read, merge_read_state
from .amortization import add_months, generate_payment_schedule
from .enrichment import LoanProgress, calculate_loan_progress, enrich_loan
from .exceptions import OwnershipError, PersistenceError, RecordNotFoundError, ValidationError
from .import_normalizer import (
    ImportBatch, ImportSource, aread_import_file, load_import_source, parse_export_document
)
from .ledger import Ledger
from .logging_config import log_action
from .models import (
    Alert, Communication, CommunicationDirection, CommunicationType, Loan, LoanFilter,
    Note, Obligation, ObligationType, Payment, PaymentStatus, PortfolioStats, to_decimal
)
from .notifications import NotificationDispatcher
from .reconciliation import ImportResult, append_only_import, generate_loan_id, reconcile
from .session import OwnerSession
from .storage import OWNERS_KEY, StorageInterface, owner_key


logger = logging.getLogger(__name__)

EXPORT_FORMAT_VERSION = "1.0"

# Fields update_loan accepts; the term fields rebuild the schedule
CONTACT_FIELDS = ("borrower", "borrower_email", "borrower_phone", "loan_officer", "tags")
TERM_FIELDS = ("amount", "interest_rate", "term_months", "start_date", "end_date")


class LoanPortfolioService:
    """Owner-scoped loan portfolio operations"""

    def __init__(self, storage: StorageInterface, clock: Callable[[], date] = date.today,
                 notification_dispatcher: Optional[NotificationDispatcher] = None,
                 max_import_rows: Optional[int] = None,
                 export_format_version: str = EXPORT_FORMAT_VERSION):
        self.storage = storage
        self.clock = clock
        self.notification_dispatcher = notification_dispatcher
        self.max_import_rows = max_import_rows
        self.export_format_version = export_format_version

        self._ledgers: Dict[str, Ledger] = {}
        self._alerts: Dict[str, List[Alert]] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Ledger plumbing
    # ------------------------------------------------------------------

    def _owner_lock(self, owner_id: str) -> threading.RLock:
        with self._locks_guard:
            if owner_id not in self._locks:
                self._locks[owner_id] = threading.RLock()
            return self._locks[owner_id]

    @contextmanager
    def _writing(self, session: OwnerSession):
        """Yield a working copy of the owner's ledger; commit it if the block succeeds"""
        owner_id = session.require_owner()
        with self._owner_lock(owner_id):
            working = self._ledger(owner_id).copy()
            yield working
            self._commit(working)

    def _ledger(self, owner_id: str) -> Ledger:
        ledger = self._ledgers.get(owner_id)
        if ledger is None:
            data = self.storage.get_json(owner_key(owner_id, "loans"), [])
            try:
                ledger = Ledger.from_list(owner_id, data)
            except (KeyError, ValueError, TypeError) as e:
                raise PersistenceError(f"Stored ledger for {owner_id} is corrupt: {e}")
            self._ledgers[owner_id] = ledger
        return ledger

    def _commit(self, ledger: Ledger) -> None:
        """Persist a ledger, then make it current"""
        with self.storage.atomic():
            self.storage.set_json(owner_key(ledger.owner_id, "loans"), ledger.to_list())
            self._register_owner(ledger.owner_id)
        self._ledgers[ledger.owner_id] = ledger

    def _register_owner(self, owner_id: str) -> None:
        with self._locks_guard:
            owners = self.storage.get_json(OWNERS_KEY, [])
            if owner_id not in owners:
                owners.append(owner_id)
                self.storage.set_json(OWNERS_KEY, owners)

    def _current_ledger(self, session: OwnerSession, today: Optional[date] = None) -> Ledger:
        """Owner's ledger with status and risk derived as of today"""
        owner_id = session.require_owner()
        return self._ledger(owner_id).as_of(today or self.clock())

    def _owned_loan(self, ledger: Ledger, loan_id: str, owner_id: str) -> Loan:
        loan = ledger.require(loan_id)
        if loan.owner_id != owner_id:
            raise OwnershipError(f"Loan {loan_id} is not managed by {owner_id}")
        return loan

    # ------------------------------------------------------------------
    # Loan records
    # ------------------------------------------------------------------

    def create_loan(self, session: OwnerSession, borrower: str, amount: Union[Decimal, str, int],
                    interest_rate: Union[Decimal, str, int], term_months: int, start_date: date,
                    end_date: Optional[date] = None, borrower_email: Optional[str] = None,
                    borrower_phone: Optional[str] = None, loan_officer: Optional[str] = None,
                    tags: Optional[List[str]] = None) -> Loan:
        """
        Create a loan by direct entry with a freshly generated schedule.

        Raises:
            ValidationError: If the terms are invalid (nothing is written)
            OwnershipError: If the session has no owner
        """
        owner_id = session.require_owner()
        today = self.clock()
        amount = to_decimal(amount)
        interest_rate = to_decimal(interest_rate, 'interest_rate')
        term_months = int(term_months)
        loan_id = generate_loan_id()

        loan = Loan(
            id=loan_id,
            borrower=borrower.strip() if borrower else "",
            borrower_email=borrower_email or None,
            borrower_phone=borrower_phone or None,
            loan_officer=loan_officer or None,
            borrower_identifier=(borrower_email or borrower or "").strip().lower() or None,
            amount=amount,
            interest_rate=interest_rate,
            term_months=term_months,
            start_date=start_date,
            end_date=end_date or add_months(start_date, term_months),
            owner_id=owner_id,
            tags=list(tags or []),
        )
        loan = replace(loan, payment_schedule=generate_payment_schedule(
            loan_id, amount, interest_rate, term_months, start_date
        ))

        with self._writing(session) as ledger:
            loan = ledger.upsert(loan, today)

        log_action(logger, "info", f"Created loan {loan.id} for {loan.borrower}",
                   owner_id=owner_id, action="create_loan", resource="loan", loan_id=loan.id)
        return loan

    def get_loan(self, session: OwnerSession, loan_id: str) -> Loan:
        owner_id = session.require_owner()
        loan = self._owned_loan(self._ledger(owner_id), loan_id, owner_id)
        return enrich_loan(loan, self.clock())

    def get_loans(self, session: OwnerSession) -> List[Loan]:
        return self._current_ledger(session).all()

    def get_filtered_loans(self, session: OwnerSession, loan_filter: Optional[LoanFilter] = None) -> List[Loan]:
        return self._current_ledger(session).filter_loans(loan_filter)

    def update_loan(self, session: OwnerSession, loan_id: str, **changes: Any) -> Loan:
        """
        Edit borrower details or loan terms.

        Changing amount, rate, term or start date rebuilds the schedule, which
        is only allowed while no installment has been paid. The end date
        follows the new term unless given explicitly.
        """
        owner_id = session.require_owner()
        unknown = set(changes) - set(CONTACT_FIELDS) - set(TERM_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown loan fields: {', '.join(sorted(unknown))}")

        with self._writing(session) as ledger:
            loan = self._owned_loan(ledger, loan_id, owner_id)

            if "amount" in changes:
                changes["amount"] = to_decimal(changes["amount"])
            if "interest_rate" in changes:
                changes["interest_rate"] = to_decimal(changes["interest_rate"], "interest_rate")
            if "term_months" in changes:
                changes["term_months"] = int(changes["term_months"])

            updated = replace(loan, **changes)
            terms_changed = any(
                getattr(updated, name) != getattr(loan, name)
                for name in ("amount", "interest_rate", "term_months", "start_date")
            )
            if terms_changed:
                if any(p.status in (PaymentStatus.PAID, PaymentStatus.PARTIAL) for p in loan.payment_schedule):
                    raise ValidationError(
                        f"Loan {loan_id} has recorded payments; update its schedule instead of its terms"
                    )
                end_date = changes.get("end_date") or add_months(updated.start_date, updated.term_months)
                updated = replace(updated, end_date=end_date, payment_schedule=generate_payment_schedule(
                    loan.id, updated.amount, updated.interest_rate, updated.term_months, updated.start_date
                ))
            if "borrower" in changes or "borrower_email" in changes:
                identifier = (updated.borrower_email or updated.borrower or "").strip().lower()
                updated = replace(updated, borrower_identifier=identifier or None)

            loan = ledger.upsert(updated, self.clock())

        log_action(logger, "info", f"Updated loan {loan_id}", owner_id=owner_id,
                   action="update_loan", resource="loan", loan_id=loan_id,
                   extra={"fields": sorted(changes)})
        return loan

    def delete_loan(self, session: OwnerSession, loan_id: str) -> None:
        """
        Delete a loan. Only the owning portfolio may delete.

        Raises:
            OwnershipError: If the session owner does not manage the loan
            RecordNotFoundError: If the loan does not exist
        """
        owner_id = session.require_owner()
        with self._writing(session) as ledger:
            self._owned_loan(ledger, loan_id, owner_id)
            ledger.remove(loan_id)

        with self._owner_lock(owner_id):
            alerts = [a for a in self.get_alerts(session) if a.loan_id != loan_id]
            self._save_alerts(owner_id, alerts)

        log_action(logger, "info", f"Deleted loan {loan_id}", owner_id=owner_id,
                   action="delete_loan", resource="loan", loan_id=loan_id)

    def update_schedule(self, session: OwnerSession, loan_id: str, schedule: Iterable[Payment]) -> Loan:
        """Replace a loan's payment schedule (kept in ascending due-date order)"""
        owner_id = session.require_owner()
        schedule = sorted(schedule, key=lambda p: p.due_date)
        ids = [p.id for p in schedule]
        if len(ids) != len(set(ids)):
            raise ValidationError("Payment ids in a schedule must be unique", field="payment_schedule")

        with self._writing(session) as ledger:
            loan = self._owned_loan(ledger, loan_id, owner_id)
            loan = ledger.upsert(replace(loan, payment_schedule=schedule), self.clock())

        log_action(logger, "info", f"Replaced schedule of loan {loan_id} ({len(schedule)} payments)",
                   owner_id=owner_id, action="update_schedule", resource="payment_schedule",
                   loan_id=loan_id)
        return loan

    def update_payment_status(self, session: OwnerSession, loan_id: str, payment_id: str,
                              status: Union[PaymentStatus, str], paid_date: Optional[date] = None,
                              paid_amount: Optional[Union[Decimal, str]] = None,
                              notes: Optional[str] = None) -> Loan:
        """
        Record a payment outcome.

        Marking a payment paid stamps today's date when no paid date is given;
        moving it back to pending or overdue clears the paid fields.
        """
        owner_id = session.require_owner()
        status = PaymentStatus(status)
        today = self.clock()

        with self._writing(session) as ledger:
            loan = self._owned_loan(ledger, loan_id, owner_id)
            payment = loan.find_payment(payment_id)
            if payment is None:
                raise RecordNotFoundError(f"Payment {payment_id} not found on loan {loan_id}")

            if status in (PaymentStatus.PAID, PaymentStatus.PARTIAL):
                updated_payment = replace(
                    payment,
                    status=status,
                    paid_date=paid_date or payment.paid_date or today,
                    paid_amount=to_decimal(paid_amount) if paid_amount is not None else payment.paid_amount,
                )
            else:
                updated_payment = replace(payment, status=status, paid_date=None, paid_amount=None)
            if notes is not None:
                updated_payment = replace(updated_payment, notes=notes)

            schedule = [updated_payment if p.id == payment_id else p for p in loan.payment_schedule]
            loan = ledger.upsert(replace(loan, payment_schedule=schedule), today)

        log_action(logger, "info", f"Payment {payment_id} marked {status.value}", owner_id=owner_id,
                   action="update_payment_status", resource="payment", loan_id=loan_id)
        return loan

    def add_obligation(self, session: OwnerSession, loan_id: str,
                       obligation_type: Union[ObligationType, str], title: str, due_date: date,
                       description: str = "", notes: str = "") -> Loan:
        owner_id = session.require_owner()
        if not title or not title.strip():
            raise ValidationError("Obligation title is required", field="title")
        obligation = Obligation(
            id=f"obligation-{uuid.uuid4().hex[:12]}",
            type=ObligationType(obligation_type),
            title=title.strip(),
            due_date=due_date,
            description=description,
            notes=notes,
        )

        with self._writing(session) as ledger:
            loan = self._owned_loan(ledger, loan_id, owner_id)
            loan = ledger.upsert(replace(loan, obligations=loan.obligations + [obligation]), self.clock())

        log_action(logger, "info", f"Added obligation {obligation.id} to loan {loan_id}",
                   owner_id=owner_id, action="add_obligation", resource="obligation", loan_id=loan_id)
        return loan

    def update_obligation(self, session: OwnerSession, loan_id: str, obligation_id: str,
                          completed: Optional[bool] = None, completed_date: Optional[date] = None,
                          **changes: Any) -> Loan:
        """
        Update an obligation. Completing it stamps today's date unless one is
        given; reopening it clears the completion date.
        """
        owner_id = session.require_owner()
        allowed = {"title", "due_date", "description", "notes", "documents", "type"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Unknown obligation fields: {', '.join(sorted(unknown))}")
        if "type" in changes:
            changes["type"] = ObligationType(changes["type"])
        today = self.clock()

        with self._writing(session) as ledger:
            loan = self._owned_loan(ledger, loan_id, owner_id)
            obligation = loan.find_obligation(obligation_id)
            if obligation is None:
                raise RecordNotFoundError(f"Obligation {obligation_id} not found on loan {loan_id}")

            updated = replace(obligation, **changes)
            if completed is True:
                updated = replace(updated, completed=True,
                                  completed_date=completed_date or obligation.completed_date or today)
            elif completed is False:
                updated = replace(updated, completed=False, completed_date=None)

            obligations = [updated if o.id == obligation_id else o for o in loan.obligations]
            loan = ledger.upsert(replace(loan, obligations=obligations), today)

        log_action(logger, "info", f"Updated obligation {obligation_id}", owner_id=owner_id,
                   action="update_obligation", resource="obligation", loan_id=loan_id)
        return loan

    def add_note(self, session: OwnerSession, loan_id: str, content: str,
                 author: Optional[str] = None) -> Loan:
        owner_id = session.require_owner()
        if not content or not content.strip():
            raise ValidationError("Note content is required", field="content")
        note = Note(
            id=f"note-{uuid.uuid4().hex[:12]}",
            date=datetime.now(timezone.utc),
            author=author or session.author,
            content=content.strip(),
        )
        with self._writing(session) as ledger:
            loan = self._owned_loan(ledger, loan_id, owner_id)
            loan = ledger.upsert(replace(loan, notes=loan.notes + [note]), self.clock())
        return loan

    def add_communication(self, session: OwnerSession, loan_id: str,
                          communication_type: Union[CommunicationType, str], subject: str,
                          content: str,
                          direction: Union[CommunicationDirection, str] = CommunicationDirection.OUTBOUND,
                          recipient: Optional[str] = None, status: Optional[str] = None,
                          automated: bool = False, related_payment_id: Optional[str] = None,
                          related_obligation_id: Optional[str] = None) -> Communication:
        owner_id = session.require_owner()
        communication = Communication(
            id=f"comm-{uuid.uuid4().hex[:12]}",
            loan_id=loan_id,
            type=CommunicationType(communication_type),
            direction=CommunicationDirection(direction),
            subject=subject,
            content=content,
            date=datetime.now(timezone.utc),
            author="System" if automated else session.author,
            recipient=recipient,
            status=status,
            automated=automated,
            related_payment_id=related_payment_id,
            related_obligation_id=related_obligation_id,
        )
        with self._writing(session) as ledger:
            loan = self._owned_loan(ledger, loan_id, owner_id)
            ledger.upsert(replace(loan, communications=loan.communications + [communication]), self.clock())

        log_action(logger, "info", f"Logged {communication.type.value} communication on loan {loan_id}",
                   owner_id=owner_id, action="add_communication", resource="communication",
                   loan_id=loan_id)
        return communication

    def get_loan_communications(self, session: OwnerSession, loan_id: str) -> List[Communication]:
        """Communications for a loan, newest first"""
        loan = self.get_loan(session, loan_id)
        return sorted(loan.communications, key=lambda c: c.date, reverse=True)

    def find_borrower_loans(self, session: OwnerSession, email: Optional[str] = None,
                            name: Optional[str] = None, across_portfolios: bool = False) -> List[Loan]:
        """
        Loans for a borrower, matched by email (or borrower identifier) then name.

        With across_portfolios, every registered owner's ledger is searched.
        """
        owner_id = session.require_owner()
        if not email and not name:
            return []
        owners = self.storage.get_json(OWNERS_KEY, []) if across_portfolios else [owner_id]
        if owner_id not in owners:
            owners = [owner_id] + list(owners)

        today = self.clock()
        matches = []
        for other_owner in owners:
            found = self._ledger(other_owner).find_by_borrower(email=email, name=name)
            matches.extend(enrich_loan(loan, today) for loan in found)
        return matches

    def get_loan_progress(self, session: OwnerSession, loan_id: str) -> LoanProgress:
        return calculate_loan_progress(self.get_loan(session, loan_id), self.clock())

    # ------------------------------------------------------------------
    # Imports and export
    # ------------------------------------------------------------------

    def _run_import(self, session: OwnerSession, batch: ImportBatch, mode: str) -> ImportResult:
        owner_id = session.require_owner()
        today = self.clock()

        with self._writing(session) as ledger:
            if mode == "append_only":
                result = append_only_import(batch.candidates, ledger, today)
            else:
                result = reconcile(batch.candidates, ledger, today)

        result.skipped = list(batch.skipped) + result.skipped
        result.total = batch.total_rows or result.total
        log_action(logger, "info", f"Import ({mode}) finished: {result.imported} imported",
                   owner_id=owner_id, action=f"import_{mode}", resource="ledger",
                   extra={
                       "total": result.total,
                       "created": result.created,
                       "updated": result.updated,
                       "skipped": len(result.skipped),
                       "errors": len(result.errors),
                   })
        return result

    def import_append_only(self, session: OwnerSession, source: ImportSource) -> ImportResult:
        """
        Import new loans without touching existing ones; duplicates are skipped.

        Raises:
            ParseError: If the source is malformed (the ledger is untouched)
        """
        session.require_owner()
        batch = load_import_source(source, max_rows=self.max_import_rows)
        return self._run_import(session, batch, "append_only")

    def import_reconcile(self, session: OwnerSession, source: ImportSource) -> ImportResult:
        """
        Import loans, updating matches (by borrower email, then name) and creating the rest.

        Raises:
            ParseError: If the source is malformed (the ledger is untouched)
        """
        session.require_owner()
        batch = load_import_source(source, max_rows=self.max_import_rows)
        return self._run_import(session, batch, "reconcile")

    async def aimport_file(self, session: OwnerSession, path: str, mode: str = "reconcile") -> ImportResult:
        """Read an import file off the event loop, then apply it"""
        session.require_owner()
        batch = await aread_import_file(path, max_rows=self.max_import_rows)
        return self._run_import(session, batch, mode)

    def import_export_document(self, session: OwnerSession,
                               document: Union[str, bytes, Dict[str, Any], list]) -> ImportResult:
        """Reconcile a previously exported ledger document into this ledger"""
        session.require_owner()
        return self._run_import(session, parse_export_document(document), "reconcile")

    def export_ledger(self, session: OwnerSession) -> Dict[str, Any]:
        loans = self.get_loans(session)
        return {
            "version": self.export_format_version,
            "exportDate": datetime.now(timezone.utc).isoformat(),
            "loanCount": len(loans),
            "loans": [loan.to_dict() for loan in loans],
        }

    def export_ledger_json(self, session: OwnerSession) -> str:
        return json.dumps(self.export_ledger(session), indent=2, default=str)

    def reset_ledger(self, session: OwnerSession) -> None:
        """Remove every loan, alert and notification record for the owner"""
        owner_id = session.require_owner()
        with self._owner_lock(owner_id):
            for name in ("loans", "alerts", "notifications", "notification_failures"):
                self.storage.remove(owner_key(owner_id, name))
            self._ledgers[owner_id] = Ledger(owner_id)
            self._alerts.pop(owner_id, None)
        log_action(logger, "warning", "Ledger reset", owner_id=owner_id,
                   action="reset_ledger", resource="ledger")

    # ------------------------------------------------------------------
    # Alerts and statistics
    # ------------------------------------------------------------------

    def _save_alerts(self, owner_id: str, alerts: List[Alert]) -> None:
        self.storage.set_json(owner_key(owner_id, "alerts"), [a.to_dict() for a in alerts])
        self._alerts[owner_id] = alerts

    def get_alerts(self, session: OwnerSession, unread_only: bool = False) -> List[Alert]:
        owner_id = session.require_owner()
        alerts = self._alerts.get(owner_id)
        if alerts is None:
            data = self.storage.get_json(owner_key(owner_id, "alerts"), [])
            alerts = [Alert.from_dict(item) for item in data]
            self._alerts[owner_id] = alerts
        if unread_only:
            return [a for a in alerts if not a.read]
        return list(alerts)

    def generate_alerts(self, session: OwnerSession, today: Optional[date] = None) -> List[Alert]:
        """
        Rebuild the alert set from the current ledger, keeping read flags.

        When a notification dispatcher is configured, boundary reminders are
        sent and logged on the loans as automated communications.
        """
        owner_id = session.require_owner()
        today = today or self.clock()

        with self._owner_lock(owner_id):
            loans = self._current_ledger(session, today).all()
            alerts = merge_read_state(generate_alerts(loans, today), self.get_alerts(session))
            self._save_alerts(owner_id, alerts)

            if self.notification_dispatcher is not None:
                self._send_notifications(session, loans, today)

        logger.info(f"Generated {len(alerts)} alerts for {owner_id}")
        return alerts

    def _send_notifications(self, session: OwnerSession, loans: List[Loan], today: date) -> None:
        owner_id = session.require_owner()
        sent_key = owner_key(owner_id, "notifications")
        failed_key = owner_key(owner_id, "notification_failures")
        already_sent = set(self.storage.get_json(sent_key, []))
        already_failed = set(self.storage.get_json(failed_key, []))

        result = self.notification_dispatcher.dispatch(loans, today, already_sent, already_failed)

        if result.communications:
            with self._writing(session) as ledger:
                for loan_id, communications in result.communications.items():
                    loan = ledger.get(loan_id)
                    if loan is not None:
                        ledger.upsert(replace(loan, communications=loan.communications + communications), today)

        failing = (already_failed | result.failed_keys) - result.sent_keys
        with self.storage.atomic():
            if result.sent_keys:
                self.storage.set_json(sent_key, sorted(already_sent | result.sent_keys))
            if failing != already_failed:
                self.storage.set_json(failed_key, sorted(failing))

    def mark_alert_read(self, session: OwnerSession, alert_id: str) -> Alert:
        owner_id = session.require_owner()
        with self._owner_lock(owner_id):
            alerts = mark_read(self.get_alerts(session), alert_id)
            self._save_alerts(owner_id, alerts)
        return next(a for a in alerts if a.id == alert_id)

    def mark_all_alerts_read(self, session: OwnerSession) -> int:
        owner_id = session.require_owner()
        with self._owner_lock(owner_id):
            alerts = self.get_alerts(session)
            unread = sum(1 for a in alerts if not a.read)
            self._save_alerts(owner_id, mark_read(alerts))
        return unread

    def get_portfolio_stats(self, session: OwnerSession, loan_filter: Optional[LoanFilter] = None) -> PortfolioStats:
        return self._current_ledger(session).portfolio_stats(loan_filter)
