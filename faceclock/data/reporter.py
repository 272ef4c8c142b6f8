# faceclock/data/reporter.py
"""
Attendance reporter - posts a recognized check-in / check-out to the backend.

In AUTO mode the reporter asks the check-status endpoint first: someone
checked in but not yet out is checked out, everyone else is checked in.

Backend rejections ("already checked in today") and network problems come
back as ReportResult(success=False, message=...); report() does not raise
for them.
"""
import logging
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Optional

import requests

from ..core.settings import settings

logger = logging.getLogger(__name__)


class AttendanceMode(Enum):
    CHECK_IN = "checkIn"
    CHECK_OUT = "checkOut"
    AUTO = "auto"          # ask the backend per employee

    @classmethod
    def parse(cls, value) -> 'AttendanceMode':
        if isinstance(value, cls):
            return value
        normalized = str(value).replace('-', '').replace('_', '').lower()
        for mode in cls:
            if mode.value.lower() == normalized:
                return mode
        raise ValueError(f"Unknown attendance mode: {value!r}")


@dataclass
class ReportResult:
    success: bool
    message: str = ""
    data: dict = field(default_factory=dict)
    status_code: Optional[int] = None


class AttendanceReporter:

    def __init__(self, base_url=None, path=None, per_mode=None, token=None, http=None, timeout=None):
        self.base_url = (base_url or settings.API_BASE_URL).rstrip('/')
        self.path = path or settings.REPORT_PATH
        self.per_mode = settings.REPORT_ENDPOINTS_PER_MODE if per_mode is None else per_mode
        self.token = settings.API_TOKEN if token is None else token
        self.timeout = settings.HTTP_TIMEOUT if timeout is None else timeout
        self._http = http or requests.Session()

    def endpoint(self, mode: AttendanceMode) -> str:
        if self.per_mode:
            path = settings.CHECK_IN_PATH if mode is AttendanceMode.CHECK_IN else settings.CHECK_OUT_PATH
        else:
            path = self.path
        return self.base_url + path

    def _headers(self) -> dict:
        if self.token:
            return {'Authorization': f'Bearer {self.token}'}
        return {}

    def resolve_mode(self, employee_id, day: Optional[date] = None) -> AttendanceMode:
        """
        Pick check-in or check-out from today's attendance record.

        Returns CHECK_OUT only when the backend reports a check-in without
        a check-out; any failure falls back to CHECK_IN.
        """
        day = day or date.today()
        try:
            response = self._http.get(
                self.base_url + settings.CHECK_STATUS_PATH,
                params={'employeeId': str(employee_id), 'date': day.isoformat()},
                headers=self._headers(),
                timeout=self.timeout,
            )
            body = response.json() if response.ok else {}
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"[Report] {employee_id}: status check failed, assuming checkIn: {e}")
            return AttendanceMode.CHECK_IN

        record = body.get('data') if isinstance(body, dict) and body.get('success') else None
        if isinstance(record, dict) and record.get('checkInTime') and not record.get('checkOutTime'):
            return AttendanceMode.CHECK_OUT
        return AttendanceMode.CHECK_IN

    def report(self, employee_id, mode) -> ReportResult:
        mode = AttendanceMode.parse(mode)
        if mode is AttendanceMode.AUTO:
            mode = self.resolve_mode(employee_id)
        url = self.endpoint(mode)
        headers = self._headers()

        try:
            response = self._http.post(
                url,
                json={'employeeId': str(employee_id), 'mode': mode.value},
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"[Report] {employee_id} {mode.value}: network error: {e}")
            return ReportResult(success=False, message=f"Cannot reach attendance server: {e}")

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        ok = 200 <= response.status_code < 300 and body.get('success', True) is not False
        data = body.get('data') if isinstance(body.get('data'), dict) else {}

        if ok:
            message = body.get('message') or "Attendance recorded"
            logger.info(f"[Report] {employee_id} {mode.value}: OK {message}")
            return ReportResult(True, message, data, response.status_code)

        message = (
            body.get('error') or body.get('message')
            or f"Attendance server returned HTTP {response.status_code}"
        )
        logger.warning(f"[Report] {employee_id} {mode.value}: rejected: {message}")
        return ReportResult(False, message, data, response.status_code)
