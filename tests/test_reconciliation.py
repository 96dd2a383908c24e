"""
Tests for import reconciliation and append-only imports
"""

import pytest
from decimal import Decimal
from datetime import date
from dataclasses import replace

from loan_portfolio.amortization import generate_payment_schedule
from loan_portfolio.ledger import Ledger
from loan_portfolio.models import Loan, LoanCandidate, PaymentStatus
from loan_portfolio.reconciliation import (
    MODE_APPEND_ONLY, MODE_RECONCILE, append_only_import, composite_key, generate_loan_id,
    match_existing_loan, merge_candidate, reconcile
)


TODAY = date(2024, 6, 15)


def candidate(borrower="Acme Corp", email=None, amount="50000", phone=None, **kwargs) -> LoanCandidate:
    return LoanCandidate(
        borrower=borrower,
        amount=Decimal(amount),
        interest_rate=kwargs.pop("interest_rate", Decimal('5')),
        term_months=kwargs.pop("term_months", 24),
        start_date=kwargs.pop("start_date", date(2024, 1, 15)),
        end_date=kwargs.pop("end_date", date(2026, 1, 15)),
        borrower_email=email,
        borrower_phone=phone,
        **kwargs
    )


@pytest.fixture
def ledger():
    ledger = Ledger("alice")
    loan = Loan(
        id="loan-existing",
        borrower="Acme Corp",
        borrower_email="finance@acme.example",
        borrower_phone="555-0000",
        borrower_identifier="finance@acme.example",
        amount=Decimal('50000'),
        interest_rate=Decimal('5'),
        term_months=24,
        start_date=date(2024, 1, 15),
        end_date=date(2026, 1, 15),
        owner_id="alice",
        tags=["commercial"],
    )
    schedule = generate_payment_schedule(loan.id, loan.amount, loan.interest_rate, 24, loan.start_date)
    schedule[0] = replace(schedule[0], status=PaymentStatus.PAID, paid_date=date(2024, 2, 15))
    ledger.upsert(replace(loan, payment_schedule=schedule), TODAY)
    return ledger


class TestMatching:
    """Candidate to ledger matching"""
    
    def test_email_match_is_case_insensitive(self, ledger):
        loan, matched_by = match_existing_loan(
            candidate(borrower="Renamed", email=" FINANCE@Acme.Example "), ledger.all()
        )
        assert loan.id == "loan-existing"
        assert matched_by == "email"
    
    def test_name_match(self, ledger):
        loan, matched_by = match_existing_loan(candidate(borrower="acme corp"), ledger.all())
        assert loan.id == "loan-existing"
        assert matched_by == "name"
    
    def test_email_wins_over_name(self, ledger):
        other = Loan(
            id="loan-other", borrower="Other", borrower_email="other@example.com",
            amount=Decimal('1000'), interest_rate=Decimal('5'), term_months=12,
            start_date=date(2024, 1, 1), end_date=date(2025, 1, 1), owner_id="alice",
        )
        ledger.upsert(other, TODAY)
        loan, matched_by = match_existing_loan(
            candidate(borrower="Acme Corp", email="other@example.com"), ledger.all()
        )
        assert loan.id == "loan-other"
        assert matched_by == "email"
    
    def test_no_match(self, ledger):
        assert match_existing_loan(candidate(borrower="Nobody"), ledger.all()) == (None, None)


class TestReconcile:
    """Update-or-create imports"""
    
    def test_same_email_updates_in_place(self, ledger):
        original = ledger.get("loan-existing")
        result = reconcile(
            [candidate(email="finance@acme.example", phone="555-9999", tags=["priority"])], ledger, TODAY
        )
        
        assert result.mode == MODE_RECONCILE
        assert result.updated == 1
        assert result.created == 0
        assert result.details[0].matched_by == "email"
        assert len(ledger) == 1
        
        loan = ledger.get("loan-existing")
        assert loan.borrower_phone == "555-9999"
        assert loan.owner_id == "alice"
        assert loan.tags == ["priority"]
        assert [p.to_dict() for p in loan.payment_schedule] == [p.to_dict() for p in original.payment_schedule]
        assert loan.payment_schedule[0].status == PaymentStatus.PAID
    
    def test_blank_candidate_fields_keep_existing(self, ledger):
        reconcile([candidate(phone=None)], ledger, TODAY)
        assert ledger.get("loan-existing").borrower_phone == "555-0000"
        assert ledger.get("loan-existing").tags == ["commercial"]
    
    def test_unmatched_candidates_are_created(self, ledger):
        result = reconcile([candidate(borrower="New Co", amount="10000")], ledger, TODAY)
        assert result.created == 1
        assert len(ledger) == 2
        
        loan = ledger.get(result.details[0].loan_id)
        assert loan.owner_id == "alice"
        assert loan.borrower_identifier == "new co"
        assert len(loan.payment_schedule) == 24
        assert loan.payment_schedule[0].id == f"payment-{loan.id}-1"
    
    def test_repeated_borrower_in_one_batch_updates(self):
        ledger = Ledger("alice")
        result = reconcile(
            [candidate(borrower="Dup"), candidate(borrower="Dup", phone="555-1234")], ledger, TODAY
        )
        assert result.created == 1
        assert result.updated == 1
        assert ledger.all()[0].borrower_phone == "555-1234"
    
    def test_reconcile_is_stable(self, ledger):
        batch = [candidate(email="finance@acme.example"), candidate(borrower="New Co")]
        reconcile(batch, ledger, TODAY)
        snapshot = {loan.id: loan.payment_schedule for loan in ledger}
        result = reconcile(batch, ledger, TODAY)
        assert result.created == 0
        assert result.updated == 2
        assert {loan.id: loan.payment_schedule for loan in ledger} == snapshot
    
    def test_exported_id_is_kept_when_free(self):
        ledger = Ledger("bob")
        result = reconcile([candidate(id="loan-exported")], ledger, TODAY)
        assert result.details[0].loan_id == "loan-exported"
        assert "loan-exported" in ledger
    
    def test_merge_candidate_rebuilds_empty_schedule(self, ledger):
        existing = replace(ledger.get("loan-existing"), payment_schedule=[])
        merged = merge_candidate(existing, candidate(term_months=12))
        assert len(merged.payment_schedule) == 12
        assert merged.id == existing.id


class TestAppendOnly:
    """Append-only imports never overwrite"""
    
    def test_duplicates_are_skipped(self, ledger):
        result = append_only_import(
            [candidate(borrower="ACME CORP"), candidate(borrower="Fresh Start", amount="7500")],
            ledger, TODAY
        )
        assert result.mode == MODE_APPEND_ONLY
        assert result.created == 1
        assert len(result.skipped) == 1
        assert "Duplicate" in result.skipped[0].reason
        assert len(ledger) == 2
    
    def test_duplicates_within_batch(self):
        ledger = Ledger("alice")
        result = append_only_import([candidate(), candidate()], ledger, TODAY)
        assert result.created == 1
        assert len(result.skipped) == 1
    
    def test_same_borrower_different_amount_is_new(self, ledger):
        result = append_only_import([candidate(amount="50000.01")], ledger, TODAY)
        assert result.created == 1
    
    def test_existing_id_is_duplicate(self, ledger):
        result = append_only_import(
            [candidate(borrower="Someone Else", id="loan-existing")], ledger, TODAY
        )
        assert result.created == 0
        assert result.skipped[0].reason == "Loan loan-existing already exists"
    
    def test_second_import_adds_nothing(self):
        ledger = Ledger("alice")
        batch = [candidate(borrower="One"), candidate(borrower="Two")]
        assert append_only_import(batch, ledger, TODAY).created == 2
        second = append_only_import(batch, ledger, TODAY)
        assert second.created == 0
        assert len(second.skipped) == 2
        assert len(ledger) == 2


class TestKeys:
    def test_composite_key(self):
        assert composite_key(" Acme Corp ", Decimal('50000'), date(2024, 1, 15)) == "acme corp_50000.00_2024-01-15"
    
    def test_generated_ids_are_unique(self):
        ids = {generate_loan_id() for _ in range(200)}
        assert len(ids) == 200
        assert all(i.startswith("loan-") for i in ids)
