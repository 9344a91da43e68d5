import re
import time
from datetime import datetime, timedelta, timezone

import httpx
import jwt
import pytest

from netflex_scheduler.config import ConnectionSettings, Settings
from netflex_scheduler.dispatch import available_at, connect
from netflex_scheduler.errors import ConfigurationFailure, DispatchFailure
from netflex_scheduler.signing import TOKEN_ALGORITHM, verify_token

from support import PRIMARY_KEY, FakeSchedulerAPI, Newsletter, SendEmail

API_URL = "https://api.example.test/v1/"
CALLBACK_URL = "https://app.example.test/.well-known/netflex/scheduler"


def make_settings(**overrides):
    values = dict(
        api_url=API_URL,
        public_key=PRIMARY_KEY,
        private_key="private",
        timezone="UTC",
        app_url="https://app.example.test/",
    )
    values.update(overrides)
    return Settings(**values)


def make_queue(api, **overrides):
    return connect(make_settings(**overrides), transport=httpx.MockTransport(api))


def parse_start(value):
    return datetime.strptime(value, "%Y-%m-%d %H:%M:%S").replace(tzinfo=timezone.utc).timestamp()


@pytest.mark.asyncio
async def test_push_named_handler_submits_one_job():
    api = FakeSchedulerAPI()
    async with make_queue(api) as queue:
        remote_id = await queue.push("App\\Jobs\\SendEmail@handle", {"to": "a@b.com"})

    assert remote_id == 1
    request = api.requests[0]
    assert request.method == "POST"
    assert str(request.url) == "https://api.example.test/v1/scheduler/jobs"
    assert request.headers["authorization"].startswith("Basic ")

    body = api.submissions()[0]
    assert re.fullmatch(r"App\\Jobs\\SendEmail \([0-9a-f-]{36}\)", body["name"])
    assert body["method"] == "post"
    assert body["url"] == CALLBACK_URL
    assert body["enabled"] is True
    assert body["payload"]["displayName"] == "App\\Jobs\\SendEmail"
    assert body["payload"]["commandKind"] == "stringHandler"
    assert body["payload"]["data"] == {"to": "a@b.com"}
    assert body["name"].endswith(f"({body['payload']['uuid']})")
    assert abs(parse_start(body["start"]) - time.time()) < 5


@pytest.mark.asyncio
async def test_connection_base_uri_overrides_callback_url():
    api = FakeSchedulerAPI()
    settings = dict(connections={"scheduler": ConnectionSettings(base_uri="https://public.example.test/")})
    async with make_queue(api, **settings) as queue:
        await queue.push("Job@handle")

    assert api.submissions()[0]["url"] == "https://public.example.test/.well-known/netflex/scheduler"


@pytest.mark.asyncio
async def test_job_label_replaces_display_name():
    api = FakeSchedulerAPI()
    async with make_queue(api) as queue:
        await queue.push(Newsletter(edition=7))

    body = api.submissions()[0]
    assert body["name"] == f"Newsletter #7 ({body['payload']['uuid']})"


@pytest.mark.asyncio
@pytest.mark.parametrize("delay", [600, timedelta(minutes=10)])
async def test_later_starts_after_the_delay(delay):
    api = FakeSchedulerAPI()
    async with make_queue(api) as queue:
        await queue.later(delay, SendEmail(to="a@b.com"))

    assert abs(parse_start(api.submissions()[0]["start"]) - (time.time() + 600)) < 5


@pytest.mark.asyncio
async def test_later_on_accepts_an_instant():
    api = FakeSchedulerAPI()
    async with make_queue(api) as queue:
        await queue.later_on("emails", datetime(2030, 5, 17, 8, 30, tzinfo=timezone.utc), "Job@handle")

    assert api.submissions()[0]["start"] == "2030-05-17 08:30:00"


@pytest.mark.asyncio
async def test_start_is_rendered_in_the_configured_timezone(monkeypatch):
    monkeypatch.setenv("SCHEDULER_TIMEZONE", "Europe/Oslo")
    api = FakeSchedulerAPI()
    async with make_queue(api, timezone="Europe/Oslo") as queue:
        await queue.later(datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc), "Job@handle")

    assert api.submissions()[0]["start"] == "2030-01-01 13:00:00"


@pytest.mark.asyncio
async def test_push_raw_falls_back_to_display_name_label():
    api = FakeSchedulerAPI()
    payload = {"uuid": "b7c1", "displayName": "Report", "job": "Report@handle", "commandKind": "stringHandler"}
    async with make_queue(api) as queue:
        await queue.push_raw(payload)

    assert api.submissions()[0]["name"] == "Report (b7c1)"


@pytest.mark.asyncio
async def test_bulk_stops_at_the_first_failed_submission():
    api = FakeSchedulerAPI(fail_on=2)
    jobs = [SendEmail(to="a@b.com"), SendEmail(to="b@b.com"), SendEmail(to="c@b.com")]
    async with make_queue(api) as queue:
        with pytest.raises(DispatchFailure):
            await queue.bulk(jobs)

    recipients = [s["payload"]["data"]["command"]["data"]["to"] for s in api.submissions()]
    assert recipients == ["a@b.com", "b@b.com"]


@pytest.mark.asyncio
async def test_network_errors_become_dispatch_failures():
    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with make_queue(unreachable) as queue:
        with pytest.raises(DispatchFailure, match="connection refused"):
            await queue.push("Job@handle")


@pytest.mark.asyncio
@pytest.mark.parametrize("response, expected", [
    (httpx.Response(200, text="OK"), "OK"),
    (httpx.Response(204), None),
    (httpx.Response(201, json=["job-9"]), ["job-9"]),
])
async def test_non_object_responses_still_return_from_push(response, expected):
    async with make_queue(lambda request: response) as queue:
        assert await queue.push("Job@handle") == expected


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(200, text="OK"),
    httpx.Response(200, json={"count": 3}),
    httpx.Response(200, json=[3]),
])
async def test_unreadable_queue_size_is_a_dispatch_failure(response):
    async with make_queue(lambda request: response) as queue:
        with pytest.raises(DispatchFailure, match="unreadable queue size"):
            await queue.size()


@pytest.mark.asyncio
async def test_size_queries_the_connection_queue():
    api = FakeSchedulerAPI(size=4)
    async with make_queue(api) as queue:
        assert await queue.size() == 4
        queue.set_connection_name("reports")
        await queue.size()

    assert [r.url.path for r in api.requests] == [
        "/v1/scheduler/queue/scheduler/size",
        "/v1/scheduler/queue/reports/size",
    ]


@pytest.mark.asyncio
async def test_hooks_see_the_connection_name():
    api = FakeSchedulerAPI()
    seen = []

    def hook(connection, queue, payload):
        seen.append((connection, queue))
        return {"tenant": "acme"}

    async with connect(make_settings(), hooks=[hook], transport=httpx.MockTransport(api)) as queue:
        await queue.push_on("emails", "Job@handle")

    assert seen == [("scheduler", "default")]
    assert api.submissions()[0]["payload"]["tenant"] == "acme"


@pytest.mark.asyncio
async def test_token_mode_submits_a_signed_token():
    api = FakeSchedulerAPI()
    settings = dict(auth_mode="token", connections={"scheduler": ConnectionSettings(timeout=900)})
    async with make_queue(api, **settings) as queue:
        await queue.later(3600, SendEmail(to="a@b.com"))

    payload = api.submissions()[0]["payload"]
    assert set(payload) == {"token"}
    verified = verify_token(payload["token"], [PRIMARY_KEY])
    assert verified.envelope().display_name == "tests.SendEmail"
    claims = jwt.decode(payload["token"], PRIMARY_KEY, algorithms=[TOKEN_ALGORITHM])
    assert abs((claims["exp"] - claims["iat"]) - (3600 + 900)) <= 2


@pytest.mark.asyncio
async def test_token_mode_without_keys_is_a_configuration_failure(monkeypatch):
    monkeypatch.delenv("NETFLEX_PUBLIC_KEY")
    async with make_queue(FakeSchedulerAPI(), auth_mode="token", public_key=None) as queue:
        with pytest.raises(ConfigurationFailure):
            await queue.push("Job@handle")


def test_connect_requires_an_api_url():
    with pytest.raises(ConfigurationFailure, match="Queue URL not configured"):
        connect(make_settings(api_url=None))


def test_available_at():
    assert available_at(datetime(2030, 1, 1, tzinfo=timezone.utc)) == 1893456000
    assert abs(available_at(30) - (time.time() + 30)) < 2
