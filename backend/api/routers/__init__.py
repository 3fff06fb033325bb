"""API Routers package."""
from . import auth, employees, schedule, leave, master_data, reports, imports, admin, events

__all__ = ['auth', 'employees', 'schedule', 'leave', 'master_data', 'reports', 'imports', 'admin', 'events']
