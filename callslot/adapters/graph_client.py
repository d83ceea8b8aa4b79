"""
Microsoft Graph API client for callee calendar data and event writes.
"""

import logging
from typing import Any, Dict, List, Optional

import pendulum
import requests
from pendulum import DateTime

from ..domain.exceptions import AuthError, CalendarSyncError
from .calendar_source import CalendarEvent, ProviderBusyResponse
from .graph_authenticator import GraphAuthenticator

logger = logging.getLogger(__name__)

# Graph free/busy statuses that block a slot
BUSY_STATUSES = {"busy", "tentative", "oof", "workingelsewhere"}


class GraphClient:
    """
    Calendar provider backed by Microsoft Graph.

    Uses the callee's own delegated token: ``/me/calendar/getSchedule`` for
    free/busy information and ``/me/events`` for event writes. A callee without
    a stored credential is reported as not connected.
    """

    GRAPH_API_ENDPOINT = "https://graph.microsoft.com/v1.0"

    def __init__(self, authenticator: GraphAuthenticator, timeout: float = 10.0):
        """
        Initialize the Graph API client.

        Args:
            authenticator: Source of per-callee access tokens
            timeout: Per-request timeout in seconds
        """
        self.authenticator = authenticator
        self.timeout = timeout

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Prefer": 'outlook.timezone="UTC"',
        }

    def get_busy_intervals(
        self,
        subject_id: str,
        email: str,
        start: DateTime,
        end: DateTime,
    ) -> ProviderBusyResponse:
        """
        Get busy periods of one callee using the getSchedule API.

        Returns:
            ProviderBusyResponse with ``connected=False`` when the callee has
            no stored credential

        Raises:
            CalendarSyncError: Network failure or unexpected API response
            AuthError: The stored credential was rejected
        """
        access_token = self.authenticator.get_access_token(subject_id)
        if access_token is None:
            return ProviderBusyResponse(connected=False)

        url = f"{self.GRAPH_API_ENDPOINT}/me/calendar/getSchedule"

        payload = {
            "schedules": [email],
            "startTime": {
                "dateTime": start.in_timezone("UTC").format("YYYY-MM-DDTHH:mm:ss"),
                "timeZone": "UTC",
            },
            "endTime": {
                "dateTime": end.in_timezone("UTC").format("YYYY-MM-DDTHH:mm:ss"),
                "timeZone": "UTC",
            },
            "availabilityViewInterval": 15,
        }

        data = self._request("post", url, access_token, json=payload)
        return ProviderBusyResponse(
            connected=True,
            intervals=self._parse_schedule_response(data, email),
        )

    def _parse_schedule_response(
        self,
        response_data: Dict[str, Any],
        email: str,
    ) -> List[Dict[str, Any]]:
        """
        Parse the getSchedule API response into raw UTC intervals.

        Response format:
        {
            "value": [
                {
                    "scheduleId": "user@example.com",
                    "scheduleItems": [
                        {
                            "status": "busy",
                            "start": {"dateTime": "...", "timeZone": "UTC"},
                            "end": {"dateTime": "...", "timeZone": "UTC"}
                        }
                    ]
                }
            ]
        }
        """
        intervals: List[Dict[str, Any]] = []

        for schedule in response_data.get("value", []):
            if schedule.get("scheduleId", "").lower() != email.lower():
                continue

            if "error" in schedule:
                raise CalendarSyncError(
                    f"Graph returned an error for {email}: "
                    f"{schedule['error'].get('message', 'unknown error')}",
                    retryable=True,
                )

            for item in schedule.get("scheduleItems", []):
                status = item.get("status", "").lower()
                if status not in BUSY_STATUSES:
                    continue
                try:
                    intervals.append(
                        {
                            "start": self._parse_datetime(item["start"]),
                            "end": self._parse_datetime(item["end"]),
                        }
                    )
                except (KeyError, ValueError) as e:
                    logger.warning("Could not parse schedule item: %s", e)
                    continue

        return intervals

    @staticmethod
    def _parse_datetime(value: Dict[str, str]) -> DateTime:
        """
        Parse a Graph dateTimeTimeZone object to a UTC pendulum DateTime.

        Graph emits seven fractional digits; they are cut to microseconds.
        """
        raw = value["dateTime"]
        if "." in raw:
            head, fraction = raw.split(".", 1)
            raw = f"{head}.{fraction[:6]}"

        dt = pendulum.parse(raw, tz=value.get("timeZone") or "UTC")
        if not isinstance(dt, DateTime):
            raise ValueError(f"Could not parse datetime: {value['dateTime']}")
        return dt.in_timezone("UTC")

    def create_event(self, subject_id: str, email: str, event: CalendarEvent) -> Optional[str]:
        """
        Create an event on the callee's calendar.

        Returns:
            Graph event id, or None when the callee has no calendar connected
        """
        access_token = self.authenticator.get_access_token(subject_id)
        if access_token is None:
            return None

        body: Dict[str, Any] = {
            "subject": event.summary,
            "body": {"contentType": "text", "content": event.description},
            "start": {
                "dateTime": event.start.in_timezone("UTC").format("YYYY-MM-DDTHH:mm:ss"),
                "timeZone": "UTC",
            },
            "end": {
                "dateTime": event.end.in_timezone("UTC").format("YYYY-MM-DDTHH:mm:ss"),
                "timeZone": "UTC",
            },
            "attendees": [
                {"emailAddress": {"address": address}, "type": "required"}
                for address in event.attendees
            ],
            "isOnlineMeeting": True,
        }

        data = self._request("post", f"{self.GRAPH_API_ENDPOINT}/me/events", access_token, json=body)
        event_id = data.get("id")
        if not event_id:
            raise CalendarSyncError("Graph did not return an event id", retryable=True)

        logger.info("Created event %s on calendar of %s", event_id, subject_id)
        return event_id

    def delete_event(self, subject_id: str, event_ref: str) -> None:
        """Delete an event from the callee's calendar. Missing events are ignored."""
        access_token = self.authenticator.get_access_token(subject_id)
        if access_token is None:
            return

        url = f"{self.GRAPH_API_ENDPOINT}/me/events/{event_ref}"
        self._request("delete", url, access_token, allow_not_found=True)
        logger.info("Deleted event %s on calendar of %s", event_ref, subject_id)

    def _request(
        self,
        method: str,
        url: str,
        access_token: str,
        json: Optional[Dict[str, Any]] = None,
        allow_not_found: bool = False,
    ) -> Dict[str, Any]:
        """Perform a Graph request and map failures onto the error taxonomy."""
        try:
            response = requests.request(
                method,
                url,
                headers=self._headers(access_token),
                json=json,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise CalendarSyncError(f"Microsoft Graph request failed: {e}", retryable=True) from e

        if allow_not_found and response.status_code == 404:
            return {}

        if response.status_code in (401, 403):
            raise AuthError(
                f"Microsoft Graph rejected the stored credential ({response.status_code})"
            )

        if response.status_code == 429 or response.status_code >= 500:
            raise CalendarSyncError(
                f"Microsoft Graph unavailable ({response.status_code})", retryable=True
            )

        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            raise CalendarSyncError(f"Microsoft Graph request failed: {e}", retryable=False) from e

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()
