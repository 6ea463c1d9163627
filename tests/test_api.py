"""
Test HTTP API
=============

End-to-end through FastAPI with every service wired to in-memory fakes.
"""
from datetime import timedelta

import httpx
import pytest

from coach.advice.feedback import FeedbackLoop
from coach.advice.generator import AdviceGenerator
from coach.advice.proactive import ProactiveTriggerEngine
from coach.analytics.snapshot_service import SnapshotService
from coach.core.background import BackgroundTasks
from coach.core.session_machine import SessionStateMachine
from coach.core.types import HealthProfile
from coach.memory.repositories import (
    ActivityLog,
    AdviceRepository,
    FeedbackRepository,
    ProfileRepository,
    SessionRepository,
    SnapshotRepository,
)
from coach.policy.content_filter import KeywordContentFilter
from coach.services import CoachServices
from fakes import (
    FakeBackend,
    FakeClock,
    FakeRetriever,
    InMemoryCollection,
    RecordingSink,
    advice_json,
    snippet,
)
from main import create_app

USER = "user_1"


def build_test_services(clock):
    tasks = BackgroundTasks("test")
    sink = RecordingSink()
    profiles = ProfileRepository(InMemoryCollection("health_profiles"))
    sessions = SessionRepository(
        InMemoryCollection("fasting_sessions", unique_open_per_user=True)
    )
    activity_log = ActivityLog(InMemoryCollection("activity_log"))
    advice = AdviceRepository(InMemoryCollection("advice_records"))
    snapshots = SnapshotService(
        activity_log, sessions, SnapshotRepository(InMemoryCollection("behavior_snapshots")),
        tasks, profiles=profiles, clock=clock,
    )
    machine = SessionStateMachine(
        sessions, sink, tasks,
        content_policy=KeywordContentFilter(),
        on_session_finished=snapshots.refresh,
        clock=clock,
    )
    generator = AdviceGenerator(
        FakeRetriever([snippet("kb-1")]), FakeBackend(advice_json()), advice, clock=clock
    )
    return CoachServices(
        profiles=profiles,
        activity_log=activity_log,
        advice=advice,
        state_machine=machine,
        snapshots=snapshots,
        generator=generator,
        feedback=FeedbackLoop(advice, FeedbackRepository(InMemoryCollection()), profiles, clock=clock),
        proactive=ProactiveTriggerEngine(profiles, snapshots, generator, sink, tasks, clock=clock),
        tasks=tasks,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def services(clock):
    return build_test_services(clock)


def client_for(services):
    app = create_app(services)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


class TestFastingEndpoints:

    @pytest.mark.asyncio
    async def test_full_session_flow(self, services, clock):
        async with client_for(services) as client:
            started = await client.post(f"/users/{USER}/fasting/start", json={"fasting_type": "16_8"})
            assert started.status_code == 200
            assert started.json()["state"] == "active"
            assert started.json()["signals"]["content_filter_enabled"] is True

            clock.advance(hours=2)
            assert (await client.post(f"/users/{USER}/fasting/pause")).json()["state"] == "paused"
            clock.advance(minutes=30)
            resumed = await client.post(f"/users/{USER}/fasting/resume")
            assert resumed.json()["pause_count"] == 1

            clock.advance(hours=14)
            status = (await client.get(f"/users/{USER}/fasting/status")).json()
            assert status["progress"] == 1.0
            assert status["origin"] == "load"

            ended = await client.post(f"/users/{USER}/fasting/end", json={"completed": True})
            assert ended.json()["state"] == "completed"
            assert ended.json()["elapsed_seconds"] == 16 * 3600

            history = (await client.get(f"/users/{USER}/fasting/history")).json()
            assert [s["state"] for s in history["sessions"]] == ["completed"]
        await services.tasks.drain()

    @pytest.mark.asyncio
    async def test_double_start_is_conflict(self, services):
        async with client_for(services) as client:
            await client.post(f"/users/{USER}/fasting/start", json={})
            response = await client.post(f"/users/{USER}/fasting/start", json={})

        assert response.status_code == 409
        assert response.json()["error"] == "conflict"
        await services.tasks.drain()

    @pytest.mark.asyncio
    async def test_pause_without_session_is_invalid(self, services):
        async with client_for(services) as client:
            response = await client.post(f"/users/{USER}/fasting/pause")

        assert response.status_code == 409
        assert response.json()["error"] == "invalid_transition"

    @pytest.mark.asyncio
    async def test_request_validation(self, services):
        async with client_for(services) as client:
            bad_target = await client.post(
                f"/users/{USER}/fasting/start", json={"target_hours": 0}
            )
            bad_user = await client.get("/users/bad$id/fasting/status")

        assert bad_target.status_code == 422
        assert bad_user.status_code == 400

    @pytest.mark.asyncio
    async def test_store_failure_is_503(self, services):
        services.state_machine.sessions.collection.fail("find_one")

        async with client_for(services) as client:
            response = await client.get(f"/users/{USER}/fasting/status")

        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_content_screen_while_fasting(self, services):
        item = {"item_id": "p1", "title": "Chocolate cake and dessert snack", "description": "bakery menu"}
        async with client_for(services) as client:
            before = await client.post(f"/users/{USER}/content/screen", json=item)
            await client.post(f"/users/{USER}/fasting/start", json={})
            during = await client.post(f"/users/{USER}/content/screen", json=item)

        assert before.json()["allowed"] is True
        assert during.json()["allowed"] is False
        await services.tasks.drain()


class TestActivityAndBehavior:

    @pytest.mark.asyncio
    async def test_logged_meals_show_up_in_behavior(self, services, clock):
        logged_at = (clock.now - timedelta(hours=3)).isoformat()
        async with client_for(services) as client:
            profile = await client.put(
                f"/users/{USER}/profile",
                json={"age": 35, "height_cm": 170, "weight_kg": 70, "goals": ["weight_loss"]},
            )
            meal = await client.post(
                f"/users/{USER}/meals",
                json={"calories": 550, "meal_type": "lunch", "timestamp": logged_at},
            )
            await client.post(
                f"/users/{USER}/sleep",
                json={"duration_hours": 7.5, "quality": 0.8, "timestamp": logged_at},
            )
            behavior = await client.get(f"/users/{USER}/behavior", params={"refresh": True})

        assert profile.json()["bmi"] == 24.2
        assert meal.status_code == 200
        body = behavior.json()
        assert body["meal_patterns"]["total_meals"] == 1
        assert body["sleep_patterns"]["average_quality"] == 0.8


class TestProfileEndpoint:

    @pytest.mark.asyncio
    async def test_put_only_writes_form_fields(self, services):
        async with client_for(services) as client:
            await client.put(f"/users/{USER}/profile", json={"age": 35, "goals": ["weight_loss"]})
            await services.profiles.set_advice_feedback(USER, "a1", 4)
            await services.profiles.set_insight(USER, "feedback_analysis", {"total_ratings": 1})

            response = await client.put(
                f"/users/{USER}/profile",
                json={"age": 36, "dismissed_advice_types": ["sleep"]},
            )

        body = response.json()
        assert body["age"] == 36
        assert body["goals"] == []
        assert body["dismissed_advice_types"] == ["sleep"]
        assert body["advice_feedback"] == {"a1": 4}
        assert body["personalized_insights"] == {"feedback_analysis": {"total_ratings": 1}}

        stored = await services.profiles.get(USER)
        assert stored.advice_feedback == {"a1": 4}
        assert stored.created_at <= stored.updated_at

    @pytest.mark.asyncio
    async def test_time_zone_must_be_known(self, services):
        async with client_for(services) as client:
            saved = await client.put(
                f"/users/{USER}/profile", json={"time_zone": "Europe/Berlin"}
            )
            rejected = await client.put(
                f"/users/{USER}/profile", json={"time_zone": "Mars/Olympus_Mons"}
            )

        assert saved.status_code == 200
        assert saved.json()["time_zone"] == "Europe/Berlin"
        assert rejected.status_code == 422
        assert (await services.profiles.get(USER)).time_zone == "Europe/Berlin"


class TestAdviceEndpoints:

    @pytest.mark.asyncio
    async def test_advice_lifecycle(self, services):
        async with client_for(services) as client:
            created = await client.post(
                f"/users/{USER}/advice", json={"query": "How do I fast safely?"}
            )
            assert created.status_code == 200
            advice = created.json()
            assert advice["advice_type"] == "fasting"
            assert advice["rag_sources"] == ["kb-1"]
            advice_id = advice["_id"]

            await services.profiles.save(
                HealthProfile(user_id=USER)
            )
            rated = await client.post(f"/advice/{advice_id}/feedback", json={"rating": 5})
            assert rated.status_code == 200
            assert rated.json()["advice_type"] == "fasting"

            assert (await client.post(f"/advice/{advice_id}/read")).json()["is_read"] is True
            bookmarked = await client.post(f"/advice/{advice_id}/bookmark", json={})
            assert bookmarked.json()["is_bookmarked"] is True
            assert (await client.post(f"/advice/{advice_id}/dismiss")).json()["is_dismissed"] is True

            visible = (await client.get(f"/users/{USER}/advice")).json()["advice"]
            everything = (await client.get(
                f"/users/{USER}/advice", params={"include_dismissed": True}
            )).json()["advice"]

        assert visible == []
        assert [a["user_rating"] for a in everything] == [5]

    @pytest.mark.asyncio
    async def test_feedback_validation(self, services):
        async with client_for(services) as client:
            out_of_range = await client.post("/advice/a1/feedback", json={"rating": 7})
            unknown = await client.post("/advice/missing/feedback", json={"rating": 3})

        assert out_of_range.status_code == 422
        assert unknown.status_code == 404

    @pytest.mark.asyncio
    async def test_app_open_is_accepted(self, services):
        async with client_for(services) as client:
            response = await client.post(f"/users/{USER}/app-open")

        assert response.status_code == 202
        await services.tasks.drain()

    @pytest.mark.asyncio
    async def test_admin_scan_requires_token(self, services):
        async with client_for(services) as client:
            response = await client.post("/admin/proactive/scan")

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_health(self, services):
        async with client_for(services) as client:
            body = (await client.get("/health")).json()

        assert body["status"] == "healthy"
        assert body["scheduler"] is False
