"""Google Calendar node.

Lists the events of one calendar day using an OAuth credential. The
access token is refreshed transparently when it is about to expire.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any
from urllib.parse import quote

import httpx

from chainly.config import settings
from chainly.core.steps import NonRetriableStepError
from chainly.models.node import NodeType
from chainly.nodes.base import (
    BaseNodeExecutor,
    NodeExecutorParams,
    NodeValidationError,
    WorkflowContext,
    require_credential_access,
    require_variable_name,
)
from chainly.nodes.templating import render_template

CALENDAR_EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/{calendar_id}/events"
LABEL = "Google Calendar Node"


@dataclass
class GoogleCalendarInput:
    variable_name: str
    credential_id: str
    calendar_id: str = "primary"
    date: str | None = None


def parse_target_date(value: str | None) -> date:
    """Parse a ``YYYY-MM-DD`` (or ISO datetime) string, defaulting to today (UTC)."""
    if not value:
        return datetime.now(timezone.utc).date()
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        raise NonRetriableStepError(
            f"{LABEL}: Invalid date format. Use YYYY-MM-DD format."
        ) from None


class GoogleCalendarExecutor(BaseNodeExecutor[GoogleCalendarInput]):
    node_type = NodeType.GOOGLE_CALENDAR
    channel = "google-calendar-execution"
    step_name = "google-calendar-fetch"

    def __init__(self, timeout: float | None = None) -> None:
        self._timeout = timeout if timeout is not None else settings.executor_http_timeout

    def validate_input(self, data: dict[str, Any]) -> GoogleCalendarInput:
        variable_name = require_variable_name(data, LABEL)
        credential_id = data.get("credentialId")
        if not credential_id:
            raise NodeValidationError(f"{LABEL}: Credential is required", field="credentialId")

        return GoogleCalendarInput(
            variable_name=variable_name,
            credential_id=credential_id,
            calendar_id=data.get("calendarId") or "primary",
            date=data.get("date") or None,
        )

    async def execute(
        self,
        input_data: GoogleCalendarInput,
        params: NodeExecutorParams,
    ) -> WorkflowContext:
        credentials, user_id = require_credential_access(params, LABEL)

        calendar_id = render_template(input_data.calendar_id, params.context)
        rendered_date = render_template(input_data.date, params.context) if input_data.date else None
        target = parse_target_date(rendered_date)

        time_min = datetime.combine(target, time.min, tzinfo=timezone.utc)
        time_max = datetime.combine(target, time.max, tzinfo=timezone.utc)

        access_token = await credentials.get_access_token(input_data.credential_id, user_id)

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(
                    CALENDAR_EVENTS_URL.format(calendar_id=quote(calendar_id, safe="")),
                    headers={"Authorization": f"Bearer {access_token}"},
                    params={
                        "timeMin": time_min.isoformat(),
                        "timeMax": time_max.isoformat(),
                        "singleEvents": "true",
                        "orderBy": "startTime",
                    },
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            if status_code == 401:
                raise NonRetriableStepError(
                    f"{LABEL}: Invalid access token. Please reconnect your Google account."
                ) from e
            if status_code == 403:
                raise NonRetriableStepError(
                    f"{LABEL}: Access forbidden. The credential needs the calendar.readonly scope."
                ) from e
            if status_code == 404:
                raise NonRetriableStepError(
                    f'{LABEL}: Calendar not found. Please verify the calendar ID "{calendar_id}".'
                ) from e
            raise

        events = response.json().get("items") or []
        return {
            **params.context,
            input_data.variable_name: {
                "events": events,
                "date": target.isoformat(),
                "count": len(events),
            },
        }
