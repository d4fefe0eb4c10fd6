"""Tests for the long-running operation poller."""
from email.utils import format_datetime
from datetime import datetime, timedelta, timezone

import pytest

from cloudadmin.core.microsoft import (
    CloudAPIError,
    OperationFailedError,
    OperationPoller,
    OperationTimeoutError,
    invoke_and_wait,
    operation_location,
    retry_after_seconds,
    until_provisioning_state,
    until_status,
)


def make_poller(client, clock, **kwargs):
    kwargs.setdefault("default_delay", 0)
    return OperationPoller(client, sleep=clock.sleep, clock=clock, **kwargs)


class TestSynchronousCompletion:
    def test_no_location_returns_immediately(self, client, transport, clock):
        transport.queue(201, {"id": "abc"})

        final = invoke_and_wait(client, "POST", "/things", json={"a": 1}, poller=make_poller(client, clock))

        assert len(transport.calls) == 1
        assert final.json() == {"id": "abc"}
        assert clock.sleeps == []

    def test_retry_after_without_location_does_not_poll(self, client, clock, response_factory):
        initial = response_factory(200, {}, {"Retry-After": "10"})

        assert make_poller(client, clock).wait(initial) is initial
        assert clock.sleeps == []


class TestPolling:
    def test_location_and_retry_after_then_done(self, client, transport, clock):
        transport.queue(202, None, {"Location": "https://api.example.test/op/123", "Retry-After": "2"})
        transport.queue(200, {"status": "done"})

        final = invoke_and_wait(client, "POST", "/things", poller=make_poller(client, clock))

        assert len(transport.calls) == 2
        assert transport.calls[1]["method"] == "GET"
        assert transport.calls[1]["url"] == "https://api.example.test/op/123"
        assert final.json() == {"status": "done"}
        assert clock.sleeps == [2.0]

    def test_relative_location_resolved_against_base_url(self, client, transport, clock):
        transport.queue(202, None, {"Location": "/op/123", "Retry-After": "1"})
        transport.queue(200, {})

        invoke_and_wait(client, "POST", "/things", poller=make_poller(client, clock))

        assert transport.calls[1]["url"] == "https://api.example.test/op/123"

    def test_sleeps_each_hint_until_header_disappears(self, client, transport, clock):
        transport.queue(202, None, {"Location": "https://api.example.test/op/1", "Retry-After": "3"})
        transport.queue(202, None, {"Retry-After": "5"})
        transport.queue(202, None, {"retry-after": "1"})
        transport.queue(200, {"ok": True})

        final = invoke_and_wait(client, "POST", "/things", poller=make_poller(client, clock))

        assert len(transport.calls) == 4
        assert clock.sleeps == [3.0, 5.0, 1.0]
        assert final.json() == {"ok": True}

    def test_loop_ignores_status_code_while_hint_present(self, client, transport, clock):
        transport.queue(202, None, {"Location": "https://api.example.test/op/1", "Retry-After": "1"})
        transport.queue(200, {"state": "running"}, {"Retry-After": "1"})
        transport.queue(200, {"state": "done"})

        final = invoke_and_wait(client, "POST", "/things", poller=make_poller(client, clock))

        assert final.json() == {"state": "done"}
        assert len(transport.calls) == 3

    def test_new_location_replaces_status_url(self, client, transport, clock):
        transport.queue(202, None, {"Location": "https://api.example.test/op/1", "Retry-After": "1"})
        transport.queue(202, None, {"Location": "https://api.example.test/op/2", "Retry-After": "1"})
        transport.queue(200, {})

        invoke_and_wait(client, "POST", "/things", poller=make_poller(client, clock))

        assert transport.calls[2]["url"] == "https://api.example.test/op/2"

    def test_azure_async_operation_header_is_a_marker(self, client, transport, clock):
        transport.queue(201, {}, {"Azure-AsyncOperation": "https://api.example.test/ops/9"})
        transport.queue(200, {"status": "Succeeded"})

        final = invoke_and_wait(client, "PUT", "/deploy", poller=make_poller(client, clock))

        assert transport.calls[1]["url"] == "https://api.example.test/ops/9"
        assert final.json()["status"] == "Succeeded"

    def test_missing_hint_uses_default_delay(self, client, transport, clock):
        transport.queue(202, None, {"Location": "https://api.example.test/op/1"})
        transport.queue(200, {})

        invoke_and_wait(client, "POST", "/things", poller=make_poller(client, clock, default_delay=4))

        assert clock.sleeps == [4]

    def test_status_error_propagates(self, client, transport, clock):
        transport.queue(202, None, {"Location": "https://api.example.test/op/1", "Retry-After": "1"})
        transport.queue(500, {"error": "boom"})

        with pytest.raises(CloudAPIError) as excinfo:
            invoke_and_wait(client, "POST", "/things", poller=make_poller(client, clock))
        assert excinfo.value.status_code == 500
        assert excinfo.value.retryable


class TestTerminalStatus:
    def test_delete_flow_stops_on_not_found(self, client, transport, clock):
        transport.queue(202, None, {"Location": "https://api.example.test/envs/e1", "Retry-After": "1"})
        transport.queue(200, {"state": "Deleting"}, {"Retry-After": "1"})
        transport.queue(200, {"state": "Deleting"})
        transport.queue(404, {"error": "gone"})

        final = invoke_and_wait(client, "DELETE", "/envs/e1", until=until_status(404), poller=make_poller(client, clock))

        assert final.status_code == 404
        assert len(transport.calls) == 4

    def test_explicit_status_url_used_without_marker(self, client, transport, clock, response_factory):
        transport.queue(404, None)
        initial = response_factory(202, None)

        final = make_poller(client, clock).wait(
            initial, until=until_status(404), status_url="https://api.example.test/envs/e1",
        )

        assert final.status_code == 404
        assert transport.calls[0]["url"] == "https://api.example.test/envs/e1"

    def test_until_status_requires_codes(self):
        with pytest.raises(ValueError):
            until_status()


class TestProvisioningState:
    def test_succeeded(self, client, transport, clock):
        transport.queue(201, {}, {"Azure-AsyncOperation": "https://api.example.test/ops/1", "Retry-After": "1"})
        transport.queue(200, {"status": "Running"})
        transport.queue(200, {"status": "Succeeded"})

        final = invoke_and_wait(client, "PUT", "/deploy", until=until_provisioning_state(), poller=make_poller(client, clock))

        assert final.json()["status"] == "Succeeded"

    def test_properties_provisioning_state(self, client, transport, clock):
        transport.queue(201, {}, {"Location": "https://api.example.test/dep"})
        transport.queue(200, {"properties": {"provisioningState": "Succeeded"}})

        final = invoke_and_wait(client, "PUT", "/deploy", until=until_provisioning_state(), poller=make_poller(client, clock))

        assert final.status_code == 200

    def test_failed_raises(self, client, transport, clock):
        transport.queue(201, {}, {"Azure-AsyncOperation": "https://api.example.test/ops/1"})
        transport.queue(200, {"status": "Failed", "error": {"message": "quota exceeded"}})

        with pytest.raises(OperationFailedError) as excinfo:
            invoke_and_wait(client, "PUT", "/deploy", until=until_provisioning_state(), poller=make_poller(client, clock))
        assert excinfo.value.state == "Failed"
        assert "quota exceeded" in str(excinfo.value)


class TestCeiling:
    def test_max_attempts_raises_timeout(self, client, transport, clock):
        transport.queue(202, None, {"Location": "https://api.example.test/op/1", "Retry-After": "1"})
        for _ in range(3):
            transport.queue(202, None, {"Retry-After": "1"})

        with pytest.raises(OperationTimeoutError) as excinfo:
            invoke_and_wait(client, "POST", "/things", poller=make_poller(client, clock, max_attempts=3))

        assert excinfo.value.attempts == 3
        assert excinfo.value.last_status == 202
        assert excinfo.value.status_url == "https://api.example.test/op/1"
        assert transport.remaining == 0

    def test_deadline_raises_before_oversleeping(self, client, transport, clock):
        transport.queue(202, None, {"Location": "https://api.example.test/op/1", "Retry-After": "30"})
        transport.queue(202, None, {"Retry-After": "30"})

        with pytest.raises(OperationTimeoutError) as excinfo:
            invoke_and_wait(client, "POST", "/things", poller=make_poller(client, clock, timeout=45))

        assert excinfo.value.attempts == 1
        assert clock.sleeps == [30.0]

    def test_max_attempts_must_be_positive(self, client):
        with pytest.raises(ValueError):
            OperationPoller(client, max_attempts=0)


class TestHeaderParsing:
    def test_operation_location_priority(self, response_factory):
        resp = response_factory(202, None, {
            "Operation-Location": "https://c",
            "Azure-AsyncOperation": "https://b",
            "location": "https://a",
        })
        assert operation_location(resp) == "https://a"

    def test_operation_location_absent(self, response_factory):
        assert operation_location(response_factory(200, {})) is None

    def test_retry_after_seconds(self, response_factory):
        assert retry_after_seconds(response_factory(202, None, {"Retry-After": "7"})) == 7.0
        assert retry_after_seconds(response_factory(202, None, {"Retry-After": "-3"})) == 0.0
        assert retry_after_seconds(response_factory(202, None, {})) is None

    def test_retry_after_http_date(self, response_factory):
        when = datetime.now(timezone.utc) + timedelta(seconds=120)
        resp = response_factory(202, None, {"Retry-After": format_datetime(when, usegmt=True)})
        assert 100 < retry_after_seconds(resp) <= 120

    def test_retry_after_garbage_falls_back(self, client, transport, clock):
        transport.queue(202, None, {"Location": "https://api.example.test/op/1", "Retry-After": "soon"})
        transport.queue(200, {})

        invoke_and_wait(client, "POST", "/things", poller=make_poller(client, clock, default_delay=6))

        assert clock.sleeps == [6]
