"""
Tests for report row builders: day classification, work schedule, attendance,
tardy merge, WFH certificate, work extensions and overtime / night differential.
"""
from datetime import date

from ondutylib import report_data as rd


JANE = {'id': 'e1', 'first_name': 'Jane', 'last_name': 'Doe', 'role': 'member', 'group_name': 'Support',
        'position': 'Agent', 'employee_classification': 'Rank-and-File', 'personnel_number': 'P-1'}
BOSS = {'id': 'e2', 'first_name': 'Maria', 'last_name': 'Santos', 'role': 'manager', 'group_name': 'Support',
        'employee_classification': 'Managerial'}

MID = {'name': 'Mid Shift', 'start_time': '10:00', 'end_time': '19:00',
       'break_start_time': '14:00', 'break_end_time': '15:00', 'is_unpaid_break': True}
MANAGER_TPL = {'name': 'Manager Shift', 'start_time': '08:00', 'end_time': '17:00',
               'break_start_time': '12:00', 'break_end_time': '13:00', 'is_unpaid_break': False}


def _shift(day, **kw):
    base = {'employee_id': 'e1', 'date': day, 'start_time': '09:00', 'end_time': '18:00',
            'label': 'Shift', 'break_start_time': '12:00', 'break_end_time': '13:00', 'is_unpaid_break': True}
    base.update(kw)
    return base


def _leave(start, end=None, **kw):
    base = {'employee_id': 'e1', 'type': 'VL', 'start_date': start, 'end_date': end or start,
            'status': 'approved', 'is_all_day': True}
    base.update(kw)
    return base


class TestClassify:
    def test_day_off_beats_everything(self):
        d = date(2024, 1, 1)
        index = rd.ScheduleIndex(
            [_shift(d), _shift(d, is_day_off=True, start_time='', end_time='')],
            [_leave(d)], [{'date': d, 'title': 'New Year'}],
        )
        assert index.classify('e1', d).status == 'OFF'

    def test_holiday_off_marker(self):
        d = date(2024, 1, 1)
        index = rd.ScheduleIndex([_shift(d, is_holiday_off=True)], [], [])
        assert index.classify('e1', d).status == 'HOL OFF'

    def test_leave_before_company_holiday(self):
        d = date(2024, 1, 1)
        index = rd.ScheduleIndex([], [_leave(d, type='sl')], [{'date': d, 'title': 'New Year'}])
        assert index.classify('e1', d).status == 'SL'

    def test_company_holiday_before_regular_shift(self):
        d = date(2024, 1, 1)
        index = rd.ScheduleIndex([_shift(d)], [], [{'date': d, 'title': 'New Year'}])
        assert index.classify('e1', d).status == 'HOL OFF'

    def test_wfh_label(self):
        d = date(2024, 1, 2)
        index = rd.ScheduleIndex([_shift(d, label='wfh')], [], [])
        info = index.classify('e1', d)
        assert info.status == 'WFH'
        assert info.shift is not None

    def test_regular_shift_and_empty_day(self):
        d = date(2024, 1, 2)
        index = rd.ScheduleIndex([_shift(d)], [], [])
        assert index.classify('e1', d).status == 'SKE'
        assert index.classify('e1', date(2024, 1, 3)).status == ''

    def test_multi_day_leave_covers_range(self):
        index = rd.ScheduleIndex([], [_leave(date(2024, 1, 8), date(2024, 1, 10))], [])
        assert [index.classify('e1', date(2024, 1, d)).status for d in (7, 8, 9, 10, 11)] == ['', 'VL', 'VL', 'VL', '']


class TestWorkSchedule:
    def test_rows_per_employee_and_day(self):
        start, end = date(2024, 1, 1), date(2024, 1, 3)
        rows = rd.build_work_schedule_rows(
            [JANE], [_shift(date(2024, 1, 1)), _shift(date(2024, 1, 2), is_day_off=True)],
            [_leave(date(2024, 1, 3))], [], [MID, MANAGER_TPL], start, end,
        )
        assert [r['date'] for r in rows] == ['1/1/2024', '1/2/2024', '1/3/2024']
        assert all(r['employee_name'] == 'JANE DOE' for r in rows)
        first, off, leave = rows
        assert first['day_status'] == ''
        assert (first['schedule_start'], first['schedule_end']) == ('09:00', '18:00')
        assert (first['unpaidbreak_start'], first['paidbreak_start']) == ('12:00', '')
        assert off['day_status'] == 'OFF'
        assert off['schedule_start'] == ''
        # Leave days fall back to the role's default shift template.
        assert leave['day_status'] == 'VL'
        assert (leave['schedule_start'], leave['unpaidbreak_start']) == ('10:00', '14:00')

    def test_manager_default_template_has_paid_break(self):
        d = date(2024, 1, 1)
        rows = rd.build_work_schedule_rows([BOSS], [], [_leave(d, employee_id='e2')], [], [MID, MANAGER_TPL], d, d)
        assert rows[0]['schedule_start'] == '08:00'
        assert (rows[0]['paidbreak_start'], rows[0]['unpaidbreak_start']) == ('12:00', '')

    def test_sorted_by_name_then_date(self):
        d1, d2 = date(2024, 1, 1), date(2024, 1, 2)
        rows = rd.build_work_schedule_rows([JANE, BOSS], [], [], [], [], d1, d2)
        assert [(r['employee_name'], r['date']) for r in rows] == [
            ('JANE DOE', '1/1/2024'), ('JANE DOE', '1/2/2024'),
            ('MARIA SANTOS', '1/1/2024'), ('MARIA SANTOS', '1/2/2024'),
        ]

    def test_wfh_shift_status_left_blank(self):
        d = date(2024, 1, 1)
        row = rd.build_work_schedule_rows([JANE], [_shift(d, label='WFH')], [], [], [MID], d, d)[0]
        assert row['day_status'] == ''
        assert row['schedule_start'] == '09:00'

    def test_blank_day_has_blank_fields(self):
        d = date(2024, 1, 1)
        row = rd.build_work_schedule_rows([JANE], [], [], [], [MID], d, d)[0]
        assert row['day_status'] == ''
        assert all(row[f] == '' for f in rd.REPORT_ROW_FIELDS[3:])


class TestAttendance:
    def test_codes_per_day(self):
        days = [date(2024, 1, 1), date(2024, 1, 2)]
        rows = rd.build_attendance_rows([JANE], [_shift(days[0])], [_leave(days[1], type='EL')], [], days)
        assert rows == [{'employee': 'DOE, JANE', 'group': 'Support', 'position': 'Agent', 'days': ['SKE', 'EL']}]

    def test_headers(self):
        headers = rd.attendance_headers([date(2024, 1, 1)])
        assert headers == ['Employee Name', 'Group', 'Position', 'Mon, Jan 1']


class TestUserSummary:
    def test_counts_hours_and_leave(self):
        start, end = date(2024, 1, 1), date(2024, 1, 31)
        headers, rows = rd.build_user_summary(
            [JANE],
            [_shift(date(2024, 1, 2)), _shift(date(2024, 1, 3)), _shift(date(2024, 1, 4), is_day_off=True)],
            [_leave(date(2024, 1, 5)), _leave(date(2024, 2, 1))],
            [{'type': 'VL'}, {'type': 'SL'}], start, end,
        )
        assert headers == ['Employee Name', 'Total Shifts', 'Total Hours', 'VL', 'SL']
        assert rows == [['DOE, JANE', 2, '16.00', 1, 0]]


class TestTardy:
    def test_imported_records_win_over_tardy_leave(self):
        d1, d2 = date(2024, 1, 2), date(2024, 1, 3)
        rows = rd.build_tardy_rows(
            [JANE],
            [_shift(d2)],
            [_leave(d1, type='TARDY', start_time='09:15', end_time='18:00'),
             _leave(d2, type='TARDY', start_time='09:20', end_time='18:00', reason='Traffic')],
            [{'employee_id': 'e1', 'employee_name': 'Doe, Jane', 'date': d1, 'schedule': '9-6',
              'time_in': '09:30', 'time_out': '18:00', 'remarks': 'Imported'}],
            date(2024, 1, 1), date(2024, 1, 31),
        )
        assert rows == [
            ['Doe, Jane', '01/02/2024', '9-6', '09:30-18:00', 'Imported'],
            ['Jane Doe', '01/03/2024', '09:00-18:00', '09:20-18:00', 'Traffic'],
        ]

    def test_out_of_range_dropped(self):
        rows = rd.build_tardy_rows([JANE], [], [_leave(date(2023, 12, 31), type='TARDY')], [],
                                   date(2024, 1, 1), date(2024, 1, 31))
        assert rows == []


class TestWfh:
    def test_rows_skip_off_days(self):
        rows = rd.build_wfh_rows(
            JANE,
            [_shift(date(2024, 1, 1), label='WFH'), _shift(date(2024, 1, 2)),
             _shift(date(2024, 1, 3), is_day_off=True)],
            [_leave(date(2024, 1, 4), type='sl')],
            [], date(2024, 1, 1), date(2024, 1, 5),
        )
        assert rows == [
            {'DATE': 'January 1, 2024', 'ATTENDANCE_RENDERED': 'WFH', 'TOTAL_HRS_SPENT': '8.00', 'REMARKS': ''},
            {'DATE': 'January 2, 2024', 'ATTENDANCE_RENDERED': 'OFFICE-BASED', 'TOTAL_HRS_SPENT': '8.00', 'REMARKS': ''},
            {'DATE': 'January 4, 2024', 'ATTENDANCE_RENDERED': 'ON LEAVE', 'TOTAL_HRS_SPENT': '', 'REMARKS': 'SL'},
        ]


class TestWorkExtension:
    def test_rows_sorted_by_original_shift_date(self):
        ext = dict(type='Work Extension', start_time='18:00', end_time='20:30', original_start_time='09:00',
                   original_end_time='18:00', reason='Backlog')
        rows = rd.build_work_extension_rows(
            [JANE],
            [_leave(date(2024, 1, 4), original_shift_date=date(2024, 1, 4), **ext),
             _leave(date(2024, 1, 2), original_shift_date=date(2024, 1, 2), **ext),
             _leave(date(2024, 1, 9), original_shift_date=date(2024, 1, 9), **ext)],
            date(2024, 1, 1), date(2024, 1, 7),
        )
        assert [r['work_sched_date'] for r in rows] == ['01/02/2024', '01/04/2024']
        assert rows[0]['total_hours_extended'] == '2.50'
        assert rows[0]['employee_name'] == 'Jane Doe'


class TestOvertime:
    def test_night_shift_overlap(self):
        d = date(2024, 1, 1)
        rows = rd.build_overtime_rows([JANE], [_shift(d, start_time='22:00', end_time='07:00')], [], d, d,
                                      rd.OvertimeSettings())
        assert len(rows) == 1
        nd = rows[0]
        assert nd['TYPE'] == 'ND'
        assert nd['TYPE CODE'] == '803'
        assert nd['TOTAL HOURS'] == '8.00'
        assert (nd['START DATE'], nd['END DATE']) == ('2024-01-01', '2024-01-02')
        assert nd['SURNAME'] == 'DOE'

    def test_work_extension_becomes_ot(self):
        d = date(2024, 1, 1)
        ext = _leave(d, type='Work Extension', start_time='18:00', end_time='19:30', reason='Backlog')
        rows = rd.build_overtime_rows([JANE], [_shift(d)], [ext], d, d, rd.OvertimeSettings())
        assert [(r['TYPE'], r['TOTAL HOURS'], r['TYPE CODE']) for r in rows] == [('OT', '1.50', '801')]

    def test_ineligible_classification_skipped(self):
        d = date(2024, 1, 1)
        rows = rd.build_overtime_rows([BOSS], [_shift(d, employee_id='e2', start_time='22:00', end_time='06:00')],
                                      [], d, d, rd.OvertimeSettings())
        assert rows == []

    def test_settings_round_trip_ignores_unknown_keys(self):
        settings = rd.OvertimeSettings.from_dict({'nd_start': '21:00', 'bogus': 1})
        assert settings.nd_start == '21:00'
        assert settings.to_dict()['nd_end'] == '06:00'
