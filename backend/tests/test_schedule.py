"""
Tests for shifts, publishing, the monthly grid, employee order, shift templates,
overtime settings and the full-state endpoints.
"""
from starlette.testclient import TestClient


def _shift(**overrides):
    body = {'employee_id': 'emp-member', 'date': '2024-03-04', 'label': 'Mid',
            'start_time': '10:00', 'end_time': '19:00', 'break_start_time': '14:00', 'break_end_time': '15:00'}
    body.update(overrides)
    return body


class TestShiftWrites:
    def test_create_defaults_to_draft(self, manager_client: TestClient):
        res = manager_client.post('/api/shifts', json=_shift())
        assert res.status_code == 200
        rec = res.json()['record']
        assert rec['status'] == 'draft'
        assert rec['is_unpaid_break'] is True
        assert rec['date'] == '2024-03-04'

    def test_working_shift_needs_times(self, manager_client: TestClient):
        res = manager_client.post('/api/shifts', json=_shift(start_time=None))
        assert res.status_code == 400

    def test_day_off_needs_no_times(self, manager_client: TestClient):
        res = manager_client.post('/api/shifts', json=_shift(start_time=None, end_time=None, is_day_off=True))
        assert res.status_code == 200

    def test_invalid_clock_time(self, manager_client: TestClient):
        assert manager_client.post('/api/shifts', json=_shift(start_time='25:00')).status_code == 400
        assert manager_client.post('/api/shifts', json=_shift(start_time='9am')).status_code == 422

    def test_unknown_employee(self, manager_client: TestClient):
        assert manager_client.post('/api/shifts', json=_shift(employee_id='ghost')).status_code == 404

    def test_member_cannot_write(self, member_client: TestClient):
        assert member_client.post('/api/shifts', json=_shift()).status_code == 403

    def test_update_and_delete(self, manager_client: TestClient):
        shift_id = manager_client.post('/api/shifts', json=_shift()).json()['record']['id']
        res = manager_client.put(f'/api/shifts/{shift_id}', json={'label': 'WFH'})
        assert res.json()['record']['label'] == 'WFH'
        assert manager_client.put(f'/api/shifts/{shift_id}', json={'status': 'bogus'}).status_code == 400
        assert manager_client.delete(f'/api/shifts/{shift_id}').status_code == 200
        assert manager_client.delete(f'/api/shifts/{shift_id}').status_code == 404
        assert manager_client.put(f'/api/shifts/{shift_id}', json={'label': 'x'}).status_code == 404

    def test_clear_cell(self, manager_client: TestClient):
        manager_client.post('/api/shifts', json=_shift())
        manager_client.post('/api/shifts', json=_shift(label='Second'))
        res = manager_client.delete('/api/schedule/cell/emp-member/2024-03-04')
        assert res.json()['deleted'] == 2


class TestMonthlyGrid:
    def test_members_see_only_published(self, manager_client: TestClient, member_client: TestClient):
        manager_client.post('/api/shifts', json=_shift())
        assert member_client.get('/api/schedule', params={'year': 2024, 'month': 3}).json()['shifts'] == []
        res = manager_client.post('/api/schedule/publish', json={'year': 2024, 'month': 3})
        assert res.json()['published'] == 1
        shifts = member_client.get('/api/schedule', params={'year': 2024, 'month': 3}).json()['shifts']
        assert [s['status'] for s in shifts] == ['published']

    def test_grid_contents(self, manager_client: TestClient):
        manager_client.post('/api/shifts', json=_shift())
        manager_client.post('/api/shifts', json=_shift(date='2024-04-01'))
        manager_client.post('/api/holidays', json={'date': '2024-03-29', 'title': 'Good Friday'})
        manager_client.post('/api/notes', json={'date': '2024-03-05', 'title': 'Audit'})
        data = manager_client.get('/api/schedule', params={'year': 2024, 'month': 3}).json()
        assert data['month'] == '2024-03'
        assert len(data['shifts']) == 1
        assert [h['title'] for h in data['holidays']] == ['Good Friday']
        assert [n['title'] for n in data['notes']] == ['Audit']

    def test_rejected_leave_hidden(self, manager_client: TestClient, member_client: TestClient):
        leave_id = member_client.post('/api/leave', json={'type': 'VL', 'start_date': '2024-03-11'}).json()['record']['id']
        grid = manager_client.get('/api/schedule', params={'year': 2024, 'month': 3}).json()
        assert [l['id'] for l in grid['leave']] == [leave_id]
        manager_client.post(f'/api/leave/{leave_id}/reject')
        assert manager_client.get('/api/schedule', params={'year': 2024, 'month': 3}).json()['leave'] == []

    def test_invalid_month(self, manager_client: TestClient):
        assert manager_client.get('/api/schedule', params={'year': 2024, 'month': 13}).status_code == 400

    def test_saved_order_applied(self, manager_client: TestClient):
        res = manager_client.put('/api/schedule/order/2024/3', json={'employee_ids': ['emp-manager', 'emp-member']})
        assert res.status_code == 200
        ids = [e['id'] for e in manager_client.get('/api/schedule', params={'year': 2024, 'month': 3}).json()['employees']]
        assert ids[:2] == ['emp-manager', 'emp-member']
        assert manager_client.get('/api/schedule/order/2024/3').json()['employee_ids'] == ['emp-manager', 'emp-member']
        assert manager_client.get('/api/schedule/order/2024/4').json()['employee_ids'] == []

    def test_shift_range_query(self, manager_client: TestClient):
        manager_client.post('/api/shifts', json=_shift())
        manager_client.post('/api/shifts', json=_shift(employee_id='emp-manager'))
        res = manager_client.get('/api/shifts', params={'start': '2024-03-01', 'end': '2024-03-31',
                                                        'employee_id': 'emp-manager'})
        assert [s['employee_id'] for s in res.json()] == ['emp-manager']
        assert manager_client.get('/api/shifts', params={'start': '2024-03-31', 'end': '2024-03-01'}).json() == []


class TestShiftTemplates:
    def test_crud(self, manager_client: TestClient, member_client: TestClient):
        body = {'name': 'Mid Shift', 'label': 'Mid', 'start_time': '10:00', 'end_time': '19:00'}
        tpl = manager_client.post('/api/shift-templates', json=body).json()['record']
        assert tpl['is_unpaid_break'] is True
        assert [t['name'] for t in member_client.get('/api/shift-templates').json()] == ['Mid Shift']
        res = manager_client.put(f"/api/shift-templates/{tpl['id']}", json={'end_time': '18:00'})
        assert res.json()['record']['end_time'] == '18:00'
        assert manager_client.delete(f"/api/shift-templates/{tpl['id']}").status_code == 200
        assert manager_client.put(f"/api/shift-templates/{tpl['id']}", json={'name': 'x'}).status_code == 404


class TestOvertimeSettings:
    def test_defaults_and_save(self, manager_client: TestClient):
        data = manager_client.get('/api/settings/overtime').json()
        assert (data['nd_start'], data['nd_end'], data['ot_type_code']) == ('20:00', '06:00', '801')
        assert 'Managerial' in data['available_classifications']
        res = manager_client.put('/api/settings/overtime', json={'nd_start': '22:00', 'nd_end': '06:00',
                                                                 'classifications': ['Rank-and-File', 'Confidential']})
        assert res.status_code == 200
        assert manager_client.get('/api/settings/overtime').json()['nd_start'] == '22:00'

    def test_member_forbidden(self, member_client: TestClient):
        assert member_client.get('/api/settings/overtime').status_code == 403


class TestFullState:
    def test_fetch_all(self, member_client: TestClient):
        data = member_client.get('/api/data').json()
        assert {'employees', 'shifts', 'leave', 'leave_types', 'permissions', 'smtp_settings'} <= set(data)
        assert data['smtp_settings']['password'] is None

    def test_save_all_removes_employee_sessions(self, admin_client: TestClient, member_client: TestClient):
        state = admin_client.get('/api/data').json()
        state['employees'] = [e for e in state['employees'] if e['id'] != 'emp-member']
        res = admin_client.put('/api/data', json=state)
        assert res.status_code == 200
        assert res.json()['stats']['employees'] == 2
        assert member_client.get('/api/auth/me').status_code == 401

    def test_save_all_admin_only(self, manager_client: TestClient):
        assert manager_client.put('/api/data', json={}).status_code == 403
