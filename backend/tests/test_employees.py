"""
Tests for the team roster, own profile and groups endpoints, including role checks.
"""
from starlette.testclient import TestClient

from conftest import login


def _new_employee(**overrides):
    body = {'first_name': 'Dana', 'last_name': 'Reyes', 'email': 'dana@onduty.local', 'group_name': 'Support'}
    body.update(overrides)
    return body


class TestRoster:
    def test_list_all(self, admin_client: TestClient):
        res = admin_client.get('/api/employees')
        assert res.status_code == 200
        emails = {e['email'] for e in res.json()}
        assert emails == {'admin@onduty.local', 'manager@onduty.local', 'member@onduty.local'}

    def test_filter_by_group(self, manager_client: TestClient):
        res = manager_client.get('/api/employees', params={'group': 'Support'})
        assert [e['last_name'] for e in res.json()] == ['Brown', 'Santos']

    def test_member_sees_private_fields_only_for_self(self, member_client: TestClient):
        by_id = {e['id']: e for e in member_client.get('/api/employees').json()}
        assert by_id['emp-member']['birth_date'] == '1990-04-02'
        assert 'personnel_number' not in by_id['emp-manager']
        assert 'signature' not in by_id['emp-manager']
        single = member_client.get('/api/employees/emp-manager').json()
        assert 'load_allocation' not in single

    def test_get_unknown(self, manager_client: TestClient):
        assert manager_client.get('/api/employees/nope').status_code == 404


class TestEmployeeWrites:
    def test_create(self, admin_client: TestClient):
        res = admin_client.post('/api/employees', json=_new_employee(middle_initial='Q'))
        assert res.status_code == 200
        rec = res.json()['record']
        assert rec['role'] == 'member'
        assert rec['middle_initial'] == 'Q'
        assert 'password_hash' not in rec

    def test_created_employee_can_log_in(self, admin_client: TestClient, anon_client: TestClient):
        admin_client.post('/api/employees', json=_new_employee(password='dana-pw'))
        login(anon_client, 'dana@onduty.local', 'dana-pw')

    def test_duplicate_email_409(self, admin_client: TestClient):
        res = admin_client.post('/api/employees', json=_new_employee(email='MEMBER@onduty.local'))
        assert res.status_code == 409
        assert res.json()['detail'] == 'Another user is already using this email address.'

    def test_middle_initial_too_long(self, admin_client: TestClient):
        res = admin_client.post('/api/employees', json=_new_employee(middle_initial='AB'))
        assert res.status_code == 422

    def test_invalid_email_400(self, admin_client: TestClient):
        res = admin_client.post('/api/employees', json=_new_employee(email='not-an-email'))
        assert res.status_code == 400

    def test_manager_cannot_create(self, manager_client: TestClient):
        res = manager_client.post('/api/employees', json=_new_employee())
        assert res.status_code == 403

    def test_update_refreshes_session_role(self, admin_client: TestClient, member_client: TestClient):
        res = admin_client.put('/api/employees/emp-member', json={'role': 'manager', 'position': 'Senior Agent'})
        assert res.status_code == 200
        assert res.json()['record']['position'] == 'Senior Agent'
        # The promoted member can now use manager endpoints with the same token.
        assert member_client.get('/api/settings/overtime').status_code == 200

    def test_password_reset_revokes_sessions(self, admin_client: TestClient, member_client: TestClient):
        assert admin_client.put('/api/employees/emp-member', json={'password': 'reset-pw'}).status_code == 200
        assert member_client.get('/api/auth/me').status_code == 401

    def test_update_unknown_404(self, admin_client: TestClient):
        assert admin_client.put('/api/employees/nope', json={'phone': '1'}).status_code == 404

    def test_delete_default_admin_forbidden(self, admin_client: TestClient):
        assert admin_client.delete('/api/employees/emp-admin-01').status_code == 403

    def test_delete(self, admin_client: TestClient):
        assert admin_client.delete('/api/employees/emp-member').json()['deleted'] == 1
        assert admin_client.delete('/api/employees/emp-member').status_code == 404


class TestProfile:
    def test_get_own_profile(self, member_client: TestClient):
        assert member_client.get('/api/profile').json()['id'] == 'emp-member'

    def test_update_phone_and_signature(self, member_client: TestClient, signature_png):
        res = member_client.put('/api/profile', json={'phone': '555-0100', 'signature': signature_png})
        assert res.status_code == 200
        rec = res.json()['record']
        assert rec['phone'] == '555-0100'
        assert rec['signature'].startswith('data:image/png')

    def test_signature_must_be_png(self, member_client: TestClient):
        res = member_client.put('/api/profile', json={'signature': 'data:image/jpeg;base64,AAAA'})
        assert res.status_code == 400

    def test_profile_cannot_change_role(self, member_client: TestClient):
        member_client.put('/api/profile', json={'role': 'admin'})
        assert member_client.get('/api/profile').json()['role'] == 'member'


class TestGroups:
    def test_list_with_counts(self, member_client: TestClient):
        groups = {g['name']: g['member_count'] for g in member_client.get('/api/groups').json()}
        assert groups['Support'] == 2
        assert groups['Administration'] == 1

    def test_create_rename_delete(self, admin_client: TestClient):
        assert admin_client.post('/api/groups', json={'name': 'Billing'}).status_code == 200
        assert admin_client.post('/api/groups', json={'name': 'Billing'}).status_code == 409
        res = admin_client.put('/api/groups/Support', json={'name': 'Customer Care'})
        assert res.json()['members_moved'] == 2
        assert admin_client.get('/api/employees/emp-member').json()['group_name'] == 'Customer Care'
        assert admin_client.delete('/api/groups/Billing').status_code == 200
        assert admin_client.delete('/api/groups/Billing').status_code == 404

    def test_rename_unknown(self, admin_client: TestClient):
        assert admin_client.put('/api/groups/Nope', json={'name': 'X'}).status_code == 404

    def test_member_cannot_create(self, member_client: TestClient):
        assert member_client.post('/api/groups', json={'name': 'X'}).status_code == 403
