"""
Tests for report templates, previews, workbook downloads, emailing and CSV exports.
"""
import pytest
from starlette.testclient import TestClient

from conftest import load_xlsx, make_xlsx, sheet_values

XLSX = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'


def _upload(client: TestClient, key: str, content: bytes):
    return client.put(f'/api/templates/{key}', files={'file': ('template.xlsx', content, XLSX)})


def _schedule_template() -> bytes:
    return make_xlsx([
        ['Schedule {{start_date}} - {{end_date}}'],
        ['{{employee_name}}', '{{date}}', '{{day_status}}', '{{schedule_start}}'],
        ['Prepared by HR'],
    ])


def _mid_shift(client: TestClient, day: str = '2024-03-04'):
    body = {'employee_id': 'emp-member', 'date': day, 'label': 'Mid', 'start_time': '10:00', 'end_time': '19:00',
            'break_start_time': '14:00', 'break_end_time': '15:00'}
    return client.post('/api/shifts', json=body)


class TestTemplates:
    def test_upload_and_status(self, manager_client: TestClient):
        assert manager_client.get('/api/templates').json()['workScheduleTemplate'] is False
        res = _upload(manager_client, 'workScheduleTemplate', _schedule_template())
        assert res.status_code == 200
        assert manager_client.get('/api/templates').json()['workScheduleTemplate'] is True
        download = manager_client.get('/api/templates/workScheduleTemplate')
        assert download.headers['content-type'] == XLSX
        assert load_xlsx(download.content)['A1'].value == 'Schedule {{start_date}} - {{end_date}}'

    def test_not_a_workbook(self, manager_client: TestClient):
        res = _upload(manager_client, 'workScheduleTemplate', b'definitely not a zip')
        assert res.status_code == 400
        assert 'not a valid .xlsx' in res.json()['detail']

    def test_too_large(self, manager_client: TestClient):
        res = _upload(manager_client, 'workScheduleTemplate', b'x' * (5 * 1024 * 1024 + 1))
        assert res.status_code == 413

    def test_unknown_key(self, manager_client: TestClient):
        assert _upload(manager_client, 'bogus', _schedule_template()).status_code == 404
        assert manager_client.get('/api/templates/bogus').status_code == 404

    def test_delete(self, manager_client: TestClient):
        _upload(manager_client, 'overtimeTemplate', _schedule_template())
        assert manager_client.delete('/api/templates/overtimeTemplate').status_code == 200
        assert manager_client.delete('/api/templates/overtimeTemplate').status_code == 404

    def test_member_cannot_upload(self, member_client: TestClient):
        assert _upload(member_client, 'workScheduleTemplate', _schedule_template()).status_code == 403


class TestReportList:
    def test_ready_flags(self, manager_client: TestClient):
        _upload(manager_client, 'workScheduleTemplate', _schedule_template())
        ready = {r['type']: r['ready'] for r in manager_client.get('/api/reports').json()}
        assert ready['work-schedule'] is True
        assert ready['attendance'] is False
        assert ready['user-summary'] is True


class TestDownloads:
    def test_work_schedule(self, manager_client: TestClient):
        _mid_shift(manager_client)
        _upload(manager_client, 'workScheduleTemplate', _schedule_template())
        res = manager_client.get('/api/reports/work-schedule/download',
                                 params={'start': '2024-03-04', 'group': 'Support'})
        assert res.status_code == 200
        assert res.headers['content-type'] == XLSX
        assert 'Regular Work Schedule - 2024-03-04 to 2024-03-04.xlsx' in res.headers['content-disposition']
        values = sheet_values(load_xlsx(res.content))
        assert values[0][0] == 'Schedule 03/04/2024 - 03/04/2024'
        assert [values[1][0], values[1][1], values[1][3]] == ['CHARLIE J BROWN', '3/4/2024', '10:00']
        assert values[1][2] in ('', None)
        assert values[2][0] == 'MARIA SANTOS'
        assert values[2][2] in ('', None)
        assert values[3][0] == 'Prepared by HR'

    def test_missing_template(self, manager_client: TestClient):
        res = manager_client.get('/api/reports/work-schedule/download', params={'start': '2024-03-04'})
        assert res.status_code == 400
        assert res.json()['detail'] == 'Please upload a work schedule template first.'

    def test_template_without_anchor(self, manager_client: TestClient):
        uploaded = make_xlsx([['No tokens here']])
        _upload(manager_client, 'workExtensionTemplate', uploaded)
        res = manager_client.get('/api/reports/work-extension/download', params={'start': '2024-03-04'})
        assert res.status_code == 400
        assert '{{employee_name}}' in res.json()['detail']
        stored = manager_client.get('/api/templates/workExtensionTemplate')
        assert stored.content == uploaded

    def test_user_summary_plain_workbook(self, manager_client: TestClient):
        _mid_shift(manager_client)
        res = manager_client.get('/api/reports/user-summary/download',
                                 params={'start': '2024-03-01', 'end': '2024-03-31', 'group': 'Support'})
        ws = load_xlsx(res.content)
        assert ws.title == 'User Summary'
        values = sheet_values(ws)
        assert values[0][:3] == ['Employee Name', 'Total Shifts', 'Total Hours']
        assert values[1][:3] == ['BROWN, CHARLIE J', 1, '8.00']

    def test_member_runs_wfh_only(self, member_client: TestClient):
        assert member_client.get('/api/reports/attendance/download', params={'start': '2024-03-04'}).status_code == 403
        res = member_client.get('/api/reports/wfh/download', params={'start': '2024-03-04'})
        assert res.status_code == 400
        assert 'WFH certification' in res.json()['detail']

    def test_unknown_report(self, manager_client: TestClient):
        assert manager_client.get('/api/reports/bogus/download', params={'start': '2024-03-04'}).status_code == 404


class TestPreview:
    def test_attendance_snaps_to_week(self, manager_client: TestClient):
        res = manager_client.get('/api/reports/attendance/preview', params={'start': '2024-03-06'})
        data = res.json()
        assert data['title'] == 'Attendance Sheet (2024-03-04 to 2024-03-10)'
        assert len(data['headers']) == 3 + 7

    def test_wfh_for_self(self, member_client: TestClient, manager_client: TestClient):
        manager_client.post('/api/shifts', json={'employee_id': 'emp-member', 'date': '2024-03-04', 'label': 'WFH',
                                                 'start_time': '09:00', 'end_time': '18:00'})
        data = member_client.get('/api/reports/wfh/preview', params={'start': '2024-03-15'}).json()
        assert data['title'] == 'WFH Certification (March 2024)'
        assert data['headers'] == ['DATE', 'ATTENDANCE_RENDERED', 'TOTAL_HRS_SPENT', 'REMARKS']
        assert data['rows']

    def test_manager_previews_for_employee(self, manager_client: TestClient):
        res = manager_client.get('/api/reports/wfh/preview', params={'start': '2024-03-15', 'employee_id': 'ghost'})
        assert res.status_code == 404


class _FakeSMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host, self.port = host, port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def ehlo(self):
        pass

    def has_extn(self, name):
        return False

    def login(self, username, password):
        pass

    def send_message(self, msg):
        _FakeSMTP.sent.append(msg)


class TestEmail:
    BODY = {'start': '2024-03-01', 'end': '2024-03-31', 'recipients': ['hr@onduty.local']}

    def test_without_smtp_settings(self, manager_client: TestClient):
        res = manager_client.post('/api/reports/user-summary/email', json=self.BODY)
        assert res.status_code == 400
        assert 'SMTP' in res.json()['detail']

    def test_sends_attachment(self, manager_client: TestClient, admin_client: TestClient, monkeypatch):
        import ondutylib.mailer as mailer
        _FakeSMTP.sent = []
        monkeypatch.setattr(mailer.smtplib, 'SMTP', _FakeSMTP)
        admin_client.put('/api/admin/smtp', json={'host': 'smtp.onduty.local', 'port': 587,
                                                  'from_email': 'noreply@onduty.local'})
        res = manager_client.post('/api/reports/user-summary/email', json=self.BODY)
        assert res.status_code == 200
        assert res.json()['filename'] == 'User Summary - 2024-03-01 to 2024-03-31.xlsx'
        msg = _FakeSMTP.sent[0]
        assert msg['To'] == 'hr@onduty.local'
        assert msg['Subject'] == 'User Summary - 2024-03-01 to 2024-03-31'
        assert [p.get_filename() for p in msg.iter_attachments()] == [res.json()['filename']]

    def test_connection_failure_is_502(self, manager_client: TestClient, admin_client: TestClient, monkeypatch):
        import ondutylib.mailer as mailer

        def refuse(*args, **kwargs):
            raise ConnectionRefusedError('refused')

        monkeypatch.setattr(mailer.smtplib, 'SMTP', refuse)
        admin_client.put('/api/admin/smtp', json={'host': 'smtp.onduty.local', 'port': 587,
                                                  'from_email': 'noreply@onduty.local'})
        assert manager_client.post('/api/reports/user-summary/email', json=self.BODY).status_code == 502

    @pytest.mark.parametrize('recipients', [[]])
    def test_recipients_required(self, manager_client: TestClient, recipients):
        body = {**self.BODY, 'recipients': recipients}
        assert manager_client.post('/api/reports/user-summary/email', json=body).status_code == 422


class TestCsvExports:
    def test_holidays(self, manager_client: TestClient):
        manager_client.post('/api/holidays', json={'date': '2024-12-25', 'title': 'Christmas'})
        res = manager_client.get('/api/export/holidays', params={'year': 2024})
        assert res.headers['content-type'].startswith('text/csv')
        assert 'holidays_2024.csv' in res.headers['content-disposition']
        assert res.content.startswith(b'\xef\xbb\xbfDate,Title')
        assert '2024-12-25,Christmas' in res.content.decode('utf-8-sig')

    def test_leave_types(self, member_client: TestClient):
        text = member_client.get('/api/export/leave-types').content.decode('utf-8-sig')
        assert text.splitlines()[0] == 'Type,Color'
        assert 'VL,#3b82f6' in text
