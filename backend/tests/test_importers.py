"""
Tests for the CSV import parsers and the re-importable CSV exports.
"""
from datetime import date

import pytest

from ondutylib.importers import (
    ImportAbort, decode_csv, export_holidays_csv, export_leave_types_csv, normalize_color,
    parse_allowances, parse_holidays, parse_leave_types, parse_members, parse_schedule, parse_tardy,
)
from ondutylib.names import find_employee_by_name, full_name, surname_first

EMPLOYEES = [
    {'id': 'e1', 'first_name': 'Charlie', 'last_name': 'Brown', 'middle_initial': 'J', 'email': 'c@x.io'},
    {'id': 'e2', 'first_name': 'Maria', 'last_name': 'Santos', 'middle_initial': None, 'email': 'm@x.io'},
]
LEAVE_TYPES = [{'type': 'VL', 'color': '#3b82f6'}, {'type': 'SL', 'color': '#f97316'},
               {'type': 'OFFSET', 'color': '#6b7280'}]
TEMPLATES = [{'name': 'Mid Shift', 'label': 'Mid', 'start_time': '10:00', 'end_time': '19:00', 'color': '#123456',
              'break_start_time': '14:00', 'break_end_time': '15:00', 'is_unpaid_break': True}]


class TestNames:
    def test_full_name_drops_empty_parts(self):
        assert full_name(EMPLOYEES[0]) == 'Charlie J Brown'
        assert full_name(EMPLOYEES[1]) == 'Maria Santos'
        assert full_name(None) == ''

    def test_surname_first(self):
        assert surname_first(EMPLOYEES[0]) == 'BROWN, CHARLIE J'

    @pytest.mark.parametrize('name', ['Charlie Brown', 'charlie  j brown', 'Brown, Charlie', 'BROWN, CHARLIE J.'])
    def test_lookup_variants(self, name):
        assert find_employee_by_name(name, EMPLOYEES)['id'] == 'e1'

    def test_no_fuzzy_match(self):
        assert find_employee_by_name('Charly Brown', EMPLOYEES) is None
        assert find_employee_by_name('Brown, Maria', EMPLOYEES) is None
        assert find_employee_by_name('', EMPLOYEES) is None


class TestHolidays:
    def test_parses_and_skips(self):
        text = "Date,Title\n2024-01-01,New Year\n12/25/2024,Christmas\nnot-a-date,Broken\n2024-05-01,\n"
        report = parse_holidays(text)
        assert report.records == [
            {'date': date(2024, 1, 1), 'title': 'New Year'},
            {'date': date(2024, 12, 25), 'title': 'Christmas'},
        ]
        summary = report.summary()
        assert summary['imported'] == 2
        assert summary['skipped'] == 2
        assert summary['errors'][0].startswith('Row 4:')

    def test_missing_column_aborts(self):
        with pytest.raises(ImportAbort, match='Title'):
            parse_holidays("Date,Name\n2024-01-01,x\n")

    def test_nothing_valid_aborts(self):
        with pytest.raises(ImportAbort):
            parse_holidays("Date,Title\nbad,x\n")

    def test_export_reimports(self):
        holidays = [{'date': date(2024, 1, 1), 'title': 'New Year'}, {'date': '2024-12-25', 'title': 'Christmas, Day'}]
        text = export_holidays_csv(holidays)
        assert text.splitlines()[0] == 'Date,Title'
        assert [r['title'] for r in parse_holidays(text).records] == ['New Year', 'Christmas, Day']


class TestLeaveTypes:
    def test_case_insensitive_header_and_colour_names(self):
        report = parse_leave_types("type,COLOR\nVL,blue\nXX,#ABCDEF\nYY,chartreuse\n,red\n")
        assert report.records == [
            {'type': 'VL', 'color': '#3b82f6'},
            {'type': 'XX', 'color': '#abcdef'},
            {'type': 'YY', 'color': '#000000'},
        ]
        assert len(report.skipped) == 1

    def test_normalize_color(self):
        assert normalize_color(' Gray ') == '#6b7280'
        assert normalize_color('') == '#000000'

    def test_export_reimports(self):
        text = export_leave_types_csv(LEAVE_TYPES)
        assert parse_leave_types(text).records == LEAVE_TYPES


class TestMembers:
    def test_existing_and_duplicate_emails_skipped(self):
        text = (
            "First Name,Last Name,Email,M.I.,Role,Group,Birth Date\n"
            "Ann,Lee,ann@x.io,Marie,manager,Support,1990-02-03\n"
            "Dup,Lee,ANN@x.io,,,,\n"
            "Old,User,c@x.io,,,,\n"
            "No,Email,,,,,\n"
            "Bo,Ray,bo@x.io,,superuser,,\n"
        )
        report = parse_members(text, [e['email'] for e in EMPLOYEES])
        ann, bo = report.records
        assert ann['middle_initial'] == 'M'
        assert ann['role'] == 'manager'
        assert ann['group_name'] == 'Support'
        assert ann['birth_date'] == date(1990, 2, 3)
        assert ann['password'] == 'password'
        assert bo['role'] == 'member'
        assert len(report.skipped) == 3


class TestAllowances:
    def test_matches_names_and_numbers(self):
        text = (
            "Recipient,Load Allocation,Load Balance,Balance As Of\n"
            "\"Brown, Charlie\",\"1,000\",850.50,01/15/2024\n"
            "Nobody Here,100,50,\n"
            "Maria Santos,abc,50,\n"
        )
        report = parse_allowances(text, EMPLOYEES, today=date(2024, 1, 20))
        assert report.records == [{
            'employee_id': 'e1', 'load_allocation': 1000.0, 'balance': 850.5,
            'as_of_date': date(2024, 1, 15), 'year': 2024, 'month': 1,
        }]
        assert len(report.skipped) == 2


class TestTardy:
    def test_in_out_split(self):
        text = "Employee,Date,Schedule,In/Out,Remarks\nCharlie Brown,2024-01-02,9-6,09:20-18:00,Late\n"
        rec = parse_tardy(text, EMPLOYEES).records[0]
        assert (rec['employee_id'], rec['date'], rec['time_in'], rec['time_out']) == \
            ('e1', date(2024, 1, 2), '09:20', '18:00')
        assert rec['employee_name'] == 'Charlie Brown'


class TestScheduleGrid:
    GRID = (
        "Employees,2024-01-01,2024-01-02,2024-01-03,2024-01-04,2024-01-05,2024-01-06\n"
        "Maria Santos,10am-7pm,OFF,VL,1pm-5pm / SL,,HOL-OFF\n"
        "\"Brown, Charlie\",22:00-06:00,???,offset,,,\n"
        "Ghost Person,9am-5pm,,,,,\n"
    )

    def test_cells_become_shifts_and_leave(self):
        result = parse_schedule(self.GRID, EMPLOYEES, LEAVE_TYPES, TEMPLATES)
        assert result.month_key == '2024-01'
        assert result.employee_order == ['e2', 'e1']
        by_cell = {(s['employee_id'], s['date']): s for s in result.shifts}

        mid = by_cell[('e2', date(2024, 1, 1))]
        assert (mid['start_time'], mid['end_time'], mid['label'], mid['color']) == ('10:00', '19:00', 'Mid', '#123456')
        assert mid['break_start_time'] == '14:00'
        assert by_cell[('e2', date(2024, 1, 2))]['is_day_off'] is True
        assert by_cell[('e2', date(2024, 1, 6))]['is_holiday_off'] is True
        night = by_cell[('e1', date(2024, 1, 1))]
        assert (night['start_time'], night['end_time'], night['label']) == ('22:00', '06:00', 'Shift')

        leave = {(l['employee_id'], l['start_date']): l for l in result.leave}
        assert leave[('e2', date(2024, 1, 3))]['type'] == 'VL'
        assert leave[('e2', date(2024, 1, 3))]['is_all_day'] is True
        partial = leave[('e2', date(2024, 1, 4))]
        assert (partial['type'], partial['is_all_day'], partial['start_time'], partial['end_time']) == \
            ('SL', False, '13:00', '17:00')
        assert leave[('e1', date(2024, 1, 3))]['type'] == 'OFFSET'
        assert all(l['status'] == 'approved' for l in result.leave)

    def test_every_listed_cell_is_overwritten(self):
        result = parse_schedule(self.GRID, EMPLOYEES, LEAVE_TYPES, TEMPLATES)
        assert len(result.overwritten_cells) == 12
        assert ('e1', date(2024, 1, 6)) in result.overwritten_cells

    def test_unknown_rows_and_cells_reported(self):
        result = parse_schedule(self.GRID, EMPLOYEES, LEAVE_TYPES, TEMPLATES)
        errors = result.report.errors
        assert any("'???'" in e for e in errors)
        assert any('Ghost Person' in e for e in errors)

    def test_multiple_blocks(self):
        text = (
            "Employees,2024-01-01\nMaria Santos,9am-5pm\n\n"
            "Employees,2024-01-08\nMaria Santos,OFF\n"
        )
        result = parse_schedule(text, EMPLOYEES, LEAVE_TYPES, TEMPLATES)
        assert sorted(s['date'] for s in result.shifts) == [date(2024, 1, 1), date(2024, 1, 8)]

    def test_skipped_rows_use_csv_line_numbers(self):
        text = (
            "Employees,2024-01-01\nMaria Santos,9am-5pm\n\n"
            "Employees,2024-01-08\nGhost,OFF\nMaria Santos,???\n"
        )
        result = parse_schedule(text, EMPLOYEES, LEAVE_TYPES, TEMPLATES)
        assert result.report.errors == [
            "Row 5: employee 'Ghost' not found",
            "Row 6: unrecognised cell '???' for Maria Santos on 2024-01-08",
        ]

    def test_nothing_usable_aborts(self):
        with pytest.raises(ImportAbort):
            parse_schedule("Employees,2024-01-01\nGhost,9am-5pm\n", EMPLOYEES, LEAVE_TYPES, TEMPLATES)
        with pytest.raises(ImportAbort):
            parse_schedule("", EMPLOYEES, LEAVE_TYPES, TEMPLATES)


class TestDecode:
    def test_bom_and_latin1(self):
        assert decode_csv(b'\xef\xbb\xbfDate,Title') == 'Date,Title'
        assert decode_csv(b'Caf\xe9') == 'Caf\xe9'
