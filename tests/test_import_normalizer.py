"""
Tests for the import normalizer

Covers header synonym mapping, cell parsing, the sniffing fallback and each
supported source format.
"""

import pytest
import json
from decimal import Decimal
from datetime import date, datetime
from pathlib import Path

from openpyxl import Workbook

from loan_portfolio.exceptions import ParseError
from loan_portfolio.import_normalizer import (
    ImportBatch, load_import_source, map_header, map_headers, normalize_date, normalize_header,
    parse_decimal, parse_delimited_text, parse_export_document, parse_spreadsheet_rows,
    read_import_file, sniff_row_values
)


class TestHeaderMapping:
    """Column header synonym resolution"""
    
    @pytest.mark.parametrize("header, field", [
        ("Customer", "borrower"),
        ("Borrower Name", "borrower"),
        ("Principal", "amount"),
        ("Loan Amount (USD)", "amount"),
        ("APR", "interest_rate"),
        ("interestRate", "interest_rate"),
        ("Months", "term_months"),
        ("Loan_Term", "term_months"),
        ("Date", "start_date"),
        ("Disbursement Date", "start_date"),
        ("Maturity Date", "end_date"),
        ("E-mail", "borrower_email"),
        ("Customer Email", "borrower_email"),
        ("Phone", "borrower_phone"),
        ("Loan Officer", "loan_officer"),
        ("Status", "status"),
        ("ID", "borrower"),
    ])
    def test_synonyms(self, header, field):
        assert map_header(header) == field
    
    def test_unknown_headers(self):
        assert map_header("Favourite colour") is None
        assert map_header("Loan ID") is None
        assert map_header("") is None
        assert map_header(None) is None
    
    def test_normalize_header(self):
        assert normalize_header("  Loan__Amount - USD ") == "loan amount usd"
    
    def test_map_headers_keeps_column_order(self):
        columns = map_headers(["Customer", "Notes", "Principal", "Client Name"])
        assert columns["borrower"] == [0, 3]
        assert columns["amount"] == [2]
        assert "notes" not in columns


class TestCellParsing:
    """Number and date parsing"""
    
    def test_parse_decimal(self):
        assert parse_decimal("$1,200.50") == Decimal('1200.50')
        assert parse_decimal("5.5%") == Decimal('5.5')
        assert parse_decimal("36 months") == Decimal('36')
        assert parse_decimal(4.5) == Decimal('4.5')
        assert parse_decimal("abc") is None
        assert parse_decimal("") is None
        assert parse_decimal(None) is None
    
    @pytest.mark.parametrize("value, expected", [
        ("2024-01-15", date(2024, 1, 15)),
        ("2024-01-15T10:30:00", date(2024, 1, 15)),
        ("03/15/2024", date(2024, 3, 15)),
        ("March 15, 2024", date(2024, 3, 15)),
        (45292, date(2024, 1, 1)),
        (date(2024, 2, 29), date(2024, 2, 29)),
        (datetime(2024, 2, 29, 8, 0), date(2024, 2, 29)),
    ])
    def test_normalize_date(self, value, expected):
        assert normalize_date(value) == expected
    
    @pytest.mark.parametrize("value", ["", None, "not a date", "2024-13-45", "2024", "March 2024", "Jan 5"])
    def test_unresolvable_dates(self, value):
        assert normalize_date(value) is None


class TestSniffing:
    """Shape-based fallback for unmapped or blank cells"""
    
    def test_sniff_row_values(self):
        guesses = sniff_row_values(["Acme", "25000", "6.5", "36", "2024-01-15"])
        assert guesses["borrower"] == "Acme"
        assert guesses["amount"] == Decimal('25000')
        assert guesses["interest_rate"] == Decimal('6.5')
        assert guesses["term_months"] == 36
        assert guesses["start_date"] == "2024-01-15"
    
    def test_blank_mapped_cell_falls_back_to_sniffing(self):
        text = "Customer,Principal,APR,Months,Date,Notes\nDana,,7.25,36,2024-03-01,25000\n"
        batch = parse_delimited_text(text)
        assert len(batch.candidates) == 1
        assert batch.candidates[0].amount == Decimal('25000')
        assert batch.candidates[0].term_months == 36


class TestDelimitedText:
    """CSV-style input"""
    
    def test_synonym_headers(self):
        text = "Customer,Principal,APR,Months,Date\nAcme Corp,50000,5.5,24,2024-01-15\n"
        batch = parse_delimited_text(text)
        
        assert isinstance(batch, ImportBatch)
        assert batch.total_rows == 1
        assert batch.skipped == []
        candidate = batch.candidates[0]
        assert candidate.borrower == "Acme Corp"
        assert candidate.amount == Decimal('50000')
        assert candidate.interest_rate == Decimal('5.5')
        assert candidate.term_months == 24
        assert candidate.start_date == date(2024, 1, 15)
        assert candidate.end_date == date(2026, 1, 15)
        assert candidate.source_row == 2
        assert batch.column_mapping["APR"] == "interest_rate"
    
    def test_optional_columns(self):
        text = (
            "Borrower,Amount,Interest Rate,Term,Start Date,Maturity Date,Email,Phone,Loan Officer\n"
            "Beta LLC,10000,4,12,2024-02-01,2025-03-01,ops@beta.example,555-0100,Sam\n"
        )
        candidate = parse_delimited_text(text).candidates[0]
        assert candidate.end_date == date(2025, 3, 1)
        assert candidate.borrower_email == "ops@beta.example"
        assert candidate.borrower_phone == "555-0100"
        assert candidate.loan_officer == "Sam"
    
    def test_quoted_fields_and_bom(self):
        text = '\ufeffName,Amount,Rate,Term,Start Date\n"Smith, John","12,500",6,12,2024-01-01\n'
        candidate = parse_delimited_text(text).candidates[0]
        assert candidate.borrower == "Smith, John"
        assert candidate.amount == Decimal('12500')
    
    def test_blank_lines_ignored(self):
        text = "Name,Amount,Rate,Term,Start Date\n\nA,2000,5,12,2024-01-01\n\n"
        assert len(parse_delimited_text(text).candidates) == 1
    
    def test_short_and_long_rows(self):
        text = (
            "Name,Amount,Rate,Term,Start Date,Email\n"
            "Short,2000,5,12,2024-01-01\n"
            "Long,3000,5,12,2024-01-01,l@example.com,extra,cells\n"
        )
        batch = parse_delimited_text(text)
        assert [c.borrower for c in batch.candidates] == ["Short", "Long"]
        assert batch.candidates[0].borrower_email is None
        assert batch.candidates[1].borrower_email == "l@example.com"
    
    def test_tab_delimiter(self):
        text = "Name\tAmount\tRate\tTerm\tStart Date\nTabby\t5000\t3\t6\t2024-05-01\n"
        assert parse_delimited_text(text, delimiter="\t").candidates[0].borrower == "Tabby"
    
    def test_invalid_rows_are_skipped_with_reason(self):
        text = (
            "Name,Amount,Rate,Term,Start Date\n"
            "Good,2000,5,12,2024-01-01\n"
            "BadAmount,abc,5,12,2024-01-01\n"
            ",2000,5,12,2024-01-01\n"
            "ZeroRate,2000,0,120,2024-01-01\n"
            "NoDate,2000,5,12,someday\n"
        )
        batch = parse_delimited_text(text)
        assert [c.borrower for c in batch.candidates] == ["Good"]
        assert batch.total_rows == 5
        
        skipped = {s.row: s for s in batch.skipped}
        assert skipped[3].field == "amount"
        assert skipped[3].borrower == "BadAmount"
        assert skipped[5].field == "interest_rate"
        assert skipped[6].field == "start_date"
        assert len(batch.skipped) == 4
    
    def test_missing_required_column(self):
        text = "Customer,Principal,Months,Date\nAcme,50000,24,2024-01-15\n"
        with pytest.raises(ParseError) as exc_info:
            parse_delimited_text(text)
        message = str(exc_info.value)
        assert "interest rate/apr" in message
        assert "Found columns: Customer, Principal, Months, Date" in message
        assert "interest rate/apr" in exc_info.value.required_columns
    
    def test_header_only(self):
        with pytest.raises(ParseError):
            parse_delimited_text("Name,Amount,Rate,Term,Start Date\n")
    
    def test_empty_input(self):
        with pytest.raises(ParseError):
            parse_delimited_text("")
    
    def test_row_limit(self):
        rows = "".join(f"B{i},2000,5,12,2024-01-01\n" for i in range(5))
        with pytest.raises(ParseError):
            parse_delimited_text("Name,Amount,Rate,Term,Start Date\n" + rows, max_rows=4)
    
    def test_year_only_start_date_is_skipped(self):
        batch = parse_delimited_text("Customer,Principal,APR,Months,Date\nAcme,50000,5,24,2024\n")
        assert batch.candidates == []
        assert batch.skipped[0].field == "start_date"
        assert batch.skipped[0].reason == "Start date cannot be resolved"
    
    @pytest.mark.parametrize("delimiter", ["", ";;"])
    def test_invalid_delimiter(self, delimiter):
        with pytest.raises(ParseError):
            parse_delimited_text("Name;Amount\nA;1\n", delimiter=delimiter)


class TestSpreadsheetRows:
    """Row-sets of header -> cell mappings"""
    
    def test_typed_cells(self):
        rows = [{
            "Borrower Name": "Gamma Ltd",
            "Loan Amount": 15000,
            "Interest Rate": 4.5,
            "Term": 12.0,
            "Start Date": datetime(2024, 2, 1),
        }]
        candidate = parse_spreadsheet_rows(rows).candidates[0]
        assert candidate.amount == Decimal('15000')
        assert candidate.interest_rate == Decimal('4.5')
        assert candidate.term_months == 12
        assert candidate.start_date == date(2024, 2, 1)
    
    def test_excel_serial_dates(self):
        rows = [{"Customer": "Delta", "Principal": 9000, "APR": 7, "Months": 18, "Date": 45292}]
        assert parse_spreadsheet_rows(rows).candidates[0].start_date == date(2024, 1, 1)
    
    def test_ragged_rows(self):
        rows = [
            {"Customer": "A", "Principal": 9000, "APR": 7, "Months": 18, "Date": "2024-01-01"},
            {"Customer": "B", "Principal": 8000, "APR": 6, "Months": 12, "Date": "2024-01-01",
             "Email": "b@example.com"},
        ]
        batch = parse_spreadsheet_rows(rows)
        assert batch.candidates[1].borrower_email == "b@example.com"
        assert batch.candidates[0].borrower_email is None
    
    def test_empty_row_set(self):
        with pytest.raises(ParseError):
            parse_spreadsheet_rows([])


class TestExportDocuments:
    """Re-importing exported ledgers"""
    
    def test_envelope_with_camel_case_keys(self):
        document = {
            "version": "1.0",
            "exportDate": "2024-06-01T00:00:00+00:00",
            "loanCount": 1,
            "loans": [{
                "id": "loan-1",
                "borrower": "Epsilon",
                "borrowerEmail": "e@example.com",
                "amount": "1000",
                "interestRate": "5",
                "termMonths": 12,
                "startDate": "2024-01-01",
                "tags": ["vip"],
            }],
        }
        batch = parse_export_document(json.dumps(document))
        candidate = batch.candidates[0]
        assert candidate.id == "loan-1"
        assert candidate.borrower_email == "e@example.com"
        assert candidate.interest_rate == Decimal('5')
        assert candidate.term_months == 12
        assert candidate.end_date == date(2025, 1, 1)
        assert candidate.tags == ["vip"]
    
    def test_bare_list(self):
        batch = parse_export_document([
            {"id": "loan-2", "borrower": "Zeta", "amount": "500", "interest_rate": "0",
             "term": 6, "start_date": "2024-01-01"},
        ])
        assert batch.candidates[0].term_months == 6
    
    def test_bad_records_are_skipped(self):
        batch = parse_export_document({"loans": [
            {"id": "loan-3", "borrower": "Eta"},
            "not an object",
            {"id": "loan-4", "borrower": "Theta", "amount": "100", "interest_rate": "1",
             "term_months": 3, "start_date": "2024-01-01"},
        ]})
        assert [c.id for c in batch.candidates] == ["loan-4"]
        assert [s.row for s in batch.skipped] == [1, 2]
    
    @pytest.mark.parametrize("history", [
        {"communications": ["oops"]},
        {"obligations": "not a list"},
        {"notes": [{"content": "missing id"}]},
        {"tags": "vip"},
    ])
    def test_malformed_history_skips_only_that_record(self, history):
        valid = {"id": "loan-6", "borrower": "Iota", "amount": "100", "interest_rate": "1",
                 "term_months": 3, "start_date": "2024-01-01"}
        broken = dict(valid, id="loan-5", borrower="Kappa", **history)
        batch = parse_export_document({"loans": [broken, valid]})
        assert [c.id for c in batch.candidates] == ["loan-6"]
        assert [s.row for s in batch.skipped] == [1]
        assert "loan-5" in batch.skipped[0].reason
    
    @pytest.mark.parametrize("document", ["{not json", '{"version": "1.0"}', '"text"', b"\xff\xfe\xfa"])
    def test_malformed_documents(self, document):
        with pytest.raises(ParseError):
            parse_export_document(document)


class TestFiles:
    """Extension dispatch"""
    
    def test_csv_file(self, tmp_path):
        path = tmp_path / "loans.csv"
        path.write_text("Customer,Principal,APR,Months,Date\nAcme,50000,5.5,24,2024-01-15\n")
        batch = read_import_file(path)
        assert batch.candidates[0].borrower == "Acme"
    
    def test_tsv_file(self, tmp_path):
        path = tmp_path / "loans.tsv"
        path.write_text("Customer\tPrincipal\tAPR\tMonths\tDate\nAcme\t50000\t5.5\t24\t2024-01-15\n")
        assert read_import_file(path).candidates[0].amount == Decimal('50000')
    
    def test_xlsx_file(self, tmp_path):
        workbook = Workbook()
        sheet = workbook.active
        sheet.append(["Customer Name", "Loan Amount", "Interest Rate", "Term", "Start Date"])
        sheet.append(["Iota Inc", 75000, 6.25, 48, datetime(2024, 3, 1)])
        sheet.append([None, None, None, None, None])
        sheet.append(["Kappa", 1500, 9, 6, datetime(2024, 4, 1)])
        path = tmp_path / "loans.xlsx"
        workbook.save(path)
        
        batch = read_import_file(path)
        assert [c.borrower for c in batch.candidates] == ["Iota Inc", "Kappa"]
        assert batch.candidates[0].interest_rate == Decimal('6.25')
        assert batch.candidates[0].start_date == date(2024, 3, 1)
    
    def test_json_file(self, tmp_path):
        path = tmp_path / "export.json"
        path.write_text(json.dumps({"loans": [
            {"id": "loan-9", "borrower": "Lambda", "amount": "100", "interest_rate": "1",
             "term_months": 3, "start_date": "2024-01-01"},
        ]}))
        assert read_import_file(path).candidates[0].id == "loan-9"
    
    def test_unsupported_extension(self, tmp_path):
        path = tmp_path / "loans.pdf"
        path.write_bytes(b"%PDF")
        with pytest.raises(ParseError):
            read_import_file(path)
    
    def test_missing_file(self, tmp_path):
        with pytest.raises(ParseError):
            read_import_file(tmp_path / "nope.csv")
    
    def test_undecodable_file(self, tmp_path):
        path = tmp_path / "loans.csv"
        path.write_bytes(b"Name,Amount\n\xff\xfe\xfa,100\n")
        with pytest.raises(ParseError):
            read_import_file(path)
    
    def test_load_import_source_dispatch(self, tmp_path):
        text = "Customer,Principal,APR,Months,Date\nAcme,50000,5.5,24,2024-01-15\n"
        batch = load_import_source(text)
        assert load_import_source(batch) is batch
        
        path = tmp_path / "loans.csv"
        path.write_text(text)
        assert len(load_import_source(Path(path)).candidates) == 1
        
        rows = [{"Customer": "Acme", "Principal": 50000, "APR": 5.5, "Months": 24, "Date": "2024-01-15"}]
        assert len(load_import_source(rows).candidates) == 1
