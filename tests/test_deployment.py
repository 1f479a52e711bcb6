"""Tests for Blue/Green Deployment Orchestration building blocks."""

import json
import threading

import httpx
import pytest

from src.deployment.config import (
    ALLOWED_TRANSITIONS,
    DeploymentConfig,
    DeploymentStatus,
    EnvironmentLabel,
    ErrorCode,
    GateMode,
    HealthStatus,
    ScheduleProfile,
    SMOKE_SUCCESS_CODES,
)
from src.deployment.exceptions import (
    AlarmTriggeredRollback,
    ConflictError,
    ControlPlaneError,
    DeploymentAborted,
    DeploymentError,
    DeploymentTimeoutError,
    ProvisioningError,
    SmokeTestFailure,
    TrafficShiftError,
    TransientControlPlaneError,
)
from src.deployment.health import (
    ErrorRateAlarm,
    HealthMonitor,
    HttpAlarmService,
    LocalAlarmService,
)
from src.deployment.memory import (
    InMemoryAlarmService,
    InMemoryArtifactRegistry,
    InMemoryTrafficRouter,
    ManualClock,
)
from src.deployment.models import (
    Deployment,
    Environment,
    RenderedDescriptor,
    ScheduleStep,
    TargetPair,
    TrafficSchedule,
)
from src.deployment.registry import ArtifactRegistryClient, HttpArtifactRegistry
from src.deployment.rollback import RollbackController
from src.deployment.router import HttpTrafficRouter, TrafficRouterClient
from src.deployment.smoke import SmokeTestRunner
from src.deployment.timing import CancellationToken, Deadline, wait
from src.deployment.traffic import (
    TrafficShifter,
    build_schedule,
    canary_schedule,
    linear_schedule,
)
from src.deployment.transport import ControlPlaneHTTPClient
from src.settings import Settings, get_settings


def _no_sleep(seconds):
    return None


def make_deployment(schedule=None, service="notes"):
    return Deployment(
        service=service,
        blue=Environment(EnvironmentLabel.BLUE, f"{service}-blue", current_weight=100),
        green=Environment(EnvironmentLabel.GREEN, f"{service}-green"),
        schedule=schedule or linear_schedule(),
        revision_id="rev-1",
    )


def mock_http(handler, base_url="http://control-plane"):
    client = httpx.Client(base_url=base_url, transport=httpx.MockTransport(handler))
    return ControlPlaneHTTPClient(base_url, client=client)


# ── Config Tests ─────────────────────────────────────────────────────


class TestDeploymentConfig:
    def test_deployment_status_enum(self):
        assert len(DeploymentStatus) == 7
        assert DeploymentStatus.CREATED.value == "created"
        assert DeploymentStatus.ROLLED_BACK.value == "rolled_back"

    def test_terminal_statuses(self):
        terminal = {s for s in DeploymentStatus if s.is_terminal}
        assert terminal == {
            DeploymentStatus.COMPLETE,
            DeploymentStatus.ROLLED_BACK,
            DeploymentStatus.FAILED,
        }
        for status in terminal:
            assert ALLOWED_TRANSITIONS[status] == frozenset()

    def test_provisioning_cannot_roll_back(self):
        assert DeploymentStatus.ROLLED_BACK not in ALLOWED_TRANSITIONS[DeploymentStatus.PROVISIONING]

    def test_default_config(self):
        cfg = DeploymentConfig()
        assert cfg.provisioning_grace_seconds == 120.0
        assert cfg.step_percent == 10
        assert cfg.step_duration_seconds == 60.0
        assert cfg.health_check_interval_seconds == 30.0
        assert cfg.unhealthy_threshold == 3
        assert cfg.alarm_threshold == 10
        assert cfg.alarm_window_seconds == 120.0
        assert cfg.smoke_test_attempts == 5
        assert cfg.smoke_test_delay_seconds == 10.0
        assert cfg.soak_seconds == 300.0
        assert cfg.deployment_timeout_seconds == 1200.0
        assert cfg.control_plane_max_attempts == 3
        assert cfg.gate_mode == GateMode.ENFORCE

    def test_smoke_success_codes(self):
        assert SMOKE_SUCCESS_CODES == {200, 301, 302}

    def test_from_settings(self):
        settings = Settings(gate_mode="ADVISORY", schedule_profile="canary", soak_seconds=0)
        cfg = DeploymentConfig.from_settings(settings)
        assert cfg.gate_mode == GateMode.ADVISORY
        assert cfg.schedule_profile == ScheduleProfile.CANARY
        assert cfg.soak_seconds == 0

    def test_settings_from_environment(self, monkeypatch):
        monkeypatch.setenv("RELEASE_STEP_PERCENT", "25")
        monkeypatch.setenv("RELEASE_ROUTER_URL", "http://router.internal")
        settings = get_settings()
        assert settings.step_percent == 25
        assert settings.router_url == "http://router.internal"
        assert DeploymentConfig.from_settings().step_percent == 25


class TestExceptions:
    def test_error_codes(self):
        assert ProvisioningError("x").error_code == ErrorCode.PROVISIONING_FAILED
        assert TrafficShiftError("x").error_code == ErrorCode.TRAFFIC_SHIFT_FAILED
        assert AlarmTriggeredRollback("x").error_code == ErrorCode.ALARM_TRIGGERED
        assert DeploymentAborted("x").error_code == ErrorCode.ABORTED

    def test_timeout_is_builtin_timeout(self):
        exc = DeploymentTimeoutError("slow")
        assert isinstance(exc, TimeoutError)
        assert isinstance(exc, DeploymentError)

    def test_transient_is_control_plane_error(self):
        assert issubclass(TransientControlPlaneError, ControlPlaneError)
        assert issubclass(TrafficShiftError, ControlPlaneError)

    def test_conflict_error(self):
        exc = ConflictError("notes", "d-1")
        assert exc.service == "notes"
        assert exc.active_deployment_id == "d-1"
        assert "d-1" in str(exc)

    def test_smoke_failure_details(self):
        exc = SmokeTestFailure("down", attempts=5, last_status=503)
        assert exc.attempts == 5
        assert exc.last_status == 503
        assert exc.last_error is None


# ── Model Tests ──────────────────────────────────────────────────────


class TestModels:
    def test_target_pair_validation(self):
        with pytest.raises(ValueError):
            TargetPair("same", "same")
        with pytest.raises(ValueError):
            TargetPair("", "green")

    def test_target_pair_swapped(self):
        pair = TargetPair("a", "b").swapped()
        assert pair == TargetPair("b", "a")

    def test_descriptor_artifacts_read_only(self):
        descriptor = RenderedDescriptor("{}", "abc", {"backend": "img:1"})
        with pytest.raises(TypeError):
            descriptor.artifacts["backend"] = "img:2"

    def test_schedule_must_end_at_full_weight(self):
        with pytest.raises(ValueError):
            TrafficSchedule.from_pairs([(60, 10), (120, 50)])

    def test_schedule_rejects_decreasing_weights(self):
        with pytest.raises(ValueError):
            TrafficSchedule.from_pairs([(60, 50), (120, 40), (180, 100)])

    def test_schedule_rejects_decreasing_offsets(self):
        with pytest.raises(ValueError):
            TrafficSchedule.from_pairs([(120, 50), (60, 100)])

    def test_schedule_rejects_out_of_range_weight(self):
        with pytest.raises(ValueError):
            TrafficSchedule((ScheduleStep(0, 150),))

    def test_schedule_rejects_empty(self):
        with pytest.raises(ValueError):
            TrafficSchedule(())

    def test_weight_at(self):
        schedule = linear_schedule()
        assert schedule.weight_at(0) == 0
        assert schedule.weight_at(59) == 0
        assert schedule.weight_at(60) == 10
        assert schedule.weight_at(250) == 40
        assert schedule.weight_at(10_000) == 100

    def test_deployment_to_dict(self):
        dep = make_deployment()
        dep.weight_history.append((100, 0))
        data = dep.to_dict()
        assert data["service"] == "notes"
        assert data["status"] == "created"
        assert data["weight_history"] == [[100, 0]]
        assert json.dumps(data)

    def test_traffic_shifted(self):
        dep = make_deployment()
        dep.weight_history.append((100, 0))
        assert dep.traffic_shifted is False
        dep.weight_history.append((90, 10))
        assert dep.traffic_shifted is True


# ── Schedule Tests ───────────────────────────────────────────────────


class TestSchedules:
    def test_linear_default(self):
        schedule = linear_schedule()
        assert [s.offset_seconds for s in schedule.steps] == [60.0 * k for k in range(1, 11)]
        assert [s.green_weight for s in schedule.steps] == list(range(10, 101, 10))
        assert schedule.duration_seconds == 600.0

    def test_linear_uneven_step_caps_at_100(self):
        schedule = linear_schedule(step_percent=30, step_duration_seconds=10)
        assert [s.green_weight for s in schedule.steps] == [30, 60, 90, 100]

    def test_linear_blue_is_complement(self):
        for step in linear_schedule(step_percent=7).steps:
            assert step.blue_weight + step.green_weight == 100

    def test_linear_rejects_bad_percent(self):
        with pytest.raises(ValueError):
            linear_schedule(step_percent=0)

    def test_canary(self):
        schedule = canary_schedule(canary_percent=5, hold_seconds=300, step_duration_seconds=60)
        assert [(s.offset_seconds, s.green_weight) for s in schedule.steps] == [
            (60.0, 5),
            (360.0, 100),
        ]

    def test_build_schedule_profile(self):
        cfg = DeploymentConfig(schedule_profile=ScheduleProfile.CANARY)
        assert len(build_schedule(cfg).steps) == 2
        assert len(build_schedule(DeploymentConfig()).steps) == 10


# ── Timing Tests ─────────────────────────────────────────────────────


class TestTiming:
    def test_cancellation_token(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel("stop")
        token.cancel("ignored")
        assert token.reason == "stop"
        with pytest.raises(DeploymentAborted):
            token.raise_if_cancelled()

    def test_deadline(self):
        clock = ManualClock()
        deadline = Deadline(clock, 100)
        clock.advance(40)
        assert deadline.remaining() == 60
        clock.advance(60)
        assert deadline.expired
        with pytest.raises(DeploymentTimeoutError):
            deadline.check()

    def test_wait_is_capped_by_deadline(self):
        clock = ManualClock()
        deadline = Deadline(clock, 20)
        with pytest.raises(DeploymentTimeoutError):
            wait(clock, 30, CancellationToken(), deadline)
        assert clock.monotonic() == 20

    def test_manual_clock_wakes_on_cancel(self):
        clock = ManualClock()
        token = CancellationToken()
        clock.call_at(15, lambda: token.cancel("abort"))
        assert clock.sleep(30, token) is True
        assert clock.monotonic() == 15


# ── Router Client Tests ──────────────────────────────────────────────


class TestTrafficRouterClient:
    def setup_method(self):
        self.router = InMemoryTrafficRouter()
        self.client = TrafficRouterClient(self.router, sleep=_no_sleep)
        self.dep = make_deployment()

    def test_apply_weights_records_history(self):
        assert self.client.apply_weights(self.dep, 30) == (70, 30)
        assert self.dep.weights == (70, 30)
        assert self.dep.weight_history == [(70, 30)]
        assert self.router.weights == {"notes-blue": 70, "notes-green": 30}

    def test_attach_sets_zero(self):
        self.client.attach(self.dep)
        assert self.router.green_weights == [0]

    def test_rejects_out_of_range(self):
        with pytest.raises(ValueError):
            self.client.apply_weights(self.dep, 101)

    def test_transient_failure_exhausts_retries(self):
        self.router.unavailable_weights.add(50)
        with pytest.raises(TrafficShiftError) as exc_info:
            self.client.apply_weights(self.dep, 50)
        assert exc_info.value.green_weight == 50
        assert self.dep.weight_history == []

    def test_transient_failure_recovers(self):
        calls = []
        original = self.router.set_weights

        def flaky(targets, green_weight):
            calls.append(green_weight)
            if len(calls) < 3:
                raise TransientControlPlaneError("503")
            original(targets, green_weight)

        self.router.set_weights = flaky
        self.client.apply_weights(self.dep, 20)
        assert len(calls) == 3
        assert self.dep.weights == (80, 20)

    def test_rejection_is_not_retried(self):
        self.router.rejected_weights.add(10)
        with pytest.raises(TrafficShiftError):
            self.client.apply_weights(self.dep, 10)

    def test_health(self):
        self.router.set_health("notes-green", HealthStatus.UNHEALTHY)
        assert self.client.health(self.dep.green) == HealthStatus.UNHEALTHY


class TestHttpAdapters:
    def test_router_sets_weights(self):
        seen = []

        def handler(request):
            seen.append((request.method, request.url.path, json.loads(request.content)))
            return httpx.Response(204)

        router = HttpTrafficRouter("http://router", http=mock_http(handler))
        router.set_weights(TargetPair("b", "g"), 40)
        assert seen == [
            ("PUT", "/v1/weights", {
                "blue_target": "b",
                "green_target": "g",
                "blue_weight": 60,
                "green_weight": 40,
            })
        ]

    def test_router_health(self):
        def handler(request):
            assert request.url.path == "/v1/targets/notes-green/health"
            return httpx.Response(200, json={"status": "HEALTHY"})

        router = HttpTrafficRouter("http://router", http=mock_http(handler))
        assert router.get_health("notes-green") == HealthStatus.HEALTHY

    def test_router_unknown_health(self):
        router = HttpTrafficRouter(
            "http://router",
            http=mock_http(lambda r: httpx.Response(200, json={"status": "draining"})),
        )
        assert router.get_health("t") == HealthStatus.UNKNOWN

    def test_server_error_is_transient(self):
        http = mock_http(lambda r: httpx.Response(503))
        with pytest.raises(TransientControlPlaneError):
            http.request("GET", "/v1/anything")

    def test_client_error_is_permanent(self):
        http = mock_http(lambda r: httpx.Response(404, text="no such target"))
        with pytest.raises(ControlPlaneError) as exc_info:
            http.request("GET", "/v1/anything")
        assert not isinstance(exc_info.value, TransientControlPlaneError)

    def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(TransientControlPlaneError):
            mock_http(handler).request("GET", "/v1/anything")

    def test_alarm_service(self):
        subscriptions = []

        def handler(request):
            if request.method == "POST" and request.url.path == "/v1/alarms":
                subscriptions.append(json.loads(request.content))
                return httpx.Response(201, json={"handle": "h-1"})
            if request.url.path == "/v1/alarms/h-1":
                return httpx.Response(200, json={"breached": True})
            return httpx.Response(204)

        alarms = HttpAlarmService("http://alarms", http=mock_http(handler))
        handle = alarms.subscribe("errors", 10, 120, evaluation_periods=3)
        assert handle == "h-1"
        assert subscriptions == [
            {"metric": "errors", "threshold": 10, "window_seconds": 120, "evaluation_periods": 3}
        ]
        assert alarms.is_breached(handle) is True
        alarms.clear(handle)

    def test_registry(self):
        def handler(request):
            body = json.loads(request.content)
            return httpx.Response(201, json={"revision_id": f"rev-{body['digest'][:4]}"})

        registry = HttpArtifactRegistry("http://registry", http=mock_http(handler))
        descriptor = RenderedDescriptor("{}", "abcdef", {"backend": "img:1"})
        assert registry.register(descriptor) == "rev-abcd"

    def test_registry_missing_revision_id(self):
        registry = HttpArtifactRegistry(
            "http://registry", http=mock_http(lambda r: httpx.Response(200, json={}))
        )
        with pytest.raises(ControlPlaneError):
            registry.register(RenderedDescriptor("{}", "abc"))


class TestArtifactRegistryClient:
    def test_register_returns_revision(self):
        registry = InMemoryArtifactRegistry()
        client = ArtifactRegistryClient(registry, sleep=_no_sleep)
        descriptor = RenderedDescriptor("{}", "0123456789abcdef", {"backend": "img:1"})
        revision = client.register(descriptor)
        assert revision.revision_id == "rev-0123456789ab"
        assert revision.artifacts["backend"] == "img:1"
        assert revision.digest == descriptor.digest
        assert revision.revision_id in registry.revisions

    def test_unavailable_registry(self):
        class DownRegistry(InMemoryArtifactRegistry):
            def register(self, descriptor):
                raise TransientControlPlaneError("timeout")

        client = ArtifactRegistryClient(DownRegistry(), sleep=_no_sleep)
        with pytest.raises(ControlPlaneError):
            client.register(RenderedDescriptor("{}", "abc"))


# ── Health Tests ─────────────────────────────────────────────────────


class TestErrorRateAlarm:
    def setup_method(self):
        self.now = 0.0
        self.alarm = ErrorRateAlarm(
            threshold=10, window_seconds=120, evaluation_periods=2, clock=lambda: self.now
        )

    def _fail(self, count):
        for _ in range(count):
            self.alarm.record(True)

    def test_single_bad_period_does_not_breach(self):
        self._fail(11)
        self.now = 120
        assert self.alarm.evaluate() is False

    def test_two_consecutive_bad_periods_breach(self):
        self._fail(11)
        self.now = 130
        self._fail(11)
        self.now = 240
        assert self.alarm.evaluate() is True

    def test_threshold_is_exclusive(self):
        self._fail(10)
        self.now = 125
        self._fail(10)
        self.now = 240
        assert self.alarm.evaluate() is False

    def test_good_period_resets_streak(self):
        self._fail(11)
        self.now = 240  # second period is clean
        self._fail(11)
        self.now = 360
        assert self.alarm.evaluate() is False

    def test_breach_latches_until_clear(self):
        self._fail(11)
        self.now = 130
        self._fail(11)
        self.now = 1000
        assert self.alarm.evaluate() is True
        assert self.alarm.evaluate() is True
        self.alarm.clear()
        assert self.alarm.evaluate() is False

    def test_successes_are_not_counted(self):
        for _ in range(50):
            self.alarm.record(False)
        self.now = 130
        for _ in range(50):
            self.alarm.record(False)
        self.now = 240
        assert self.alarm.evaluate() is False


class TestLocalAlarmService:
    def setup_method(self):
        self.now = 0.0
        self.service = LocalAlarmService(clock=lambda: self.now)
        self.handle = self.service.subscribe(
            "http_requests_failed_total", 2, 60, evaluation_periods=1
        )

    def test_counts_server_errors_and_transport_failures(self):
        self.service.record_request("http_requests_failed_total", status_code=503)
        self.service.record_request("http_requests_failed_total", status_code=None)
        self.service.record_request("http_requests_failed_total", status_code=200, error=True)
        self.service.record_request("http_requests_failed_total", status_code=404)
        self.now = 60
        assert self.service.is_breached(self.handle) is True

    def test_other_metrics_ignored(self):
        for _ in range(5):
            self.service.record_request("other_metric", status_code=500)
        self.now = 60
        assert self.service.is_breached(self.handle) is False

    def test_clear(self):
        for _ in range(3):
            self.service.record_request("http_requests_failed_total", status_code=500)
        self.now = 60
        assert self.service.is_breached(self.handle)
        self.service.clear(self.handle)
        assert self.service.is_breached(self.handle) is False

    def test_unknown_handle(self):
        with pytest.raises(ControlPlaneError):
            self.service.is_breached("missing")

    def test_evaluation_periods_per_subscription(self):
        patient = self.service.subscribe(
            "http_requests_failed_total", 2, 60, evaluation_periods=2
        )
        for _ in range(3):
            self.service.record_request("http_requests_failed_total", status_code=500)
        self.now = 60
        assert self.service.is_breached(self.handle) is True
        assert self.service.is_breached(patient) is False


class TestHealthMonitor:
    def setup_method(self):
        self.router = InMemoryTrafficRouter()
        self.alarms = InMemoryAlarmService()
        self.client = TrafficRouterClient(self.router, sleep=_no_sleep)
        self.dep = make_deployment()
        self.monitor = HealthMonitor(self.client, self.alarms, DeploymentConfig(), sleep=_no_sleep)

    def test_arm_clears_previous_breach(self):
        handle = self.alarms.subscribe("http_requests_failed_total", 10, 120.0)
        self.alarms.breach(handle)
        self.monitor.arm(self.dep)
        assert self.monitor.handle == handle
        assert self.dep.alarm.armed
        assert self.monitor.check(self.dep).alarm_breached is False

    def test_arm_subscribes_with_configured_periods(self):
        monitor = HealthMonitor(
            self.client, self.alarms, DeploymentConfig(alarm_evaluation_periods=3), sleep=_no_sleep
        )
        monitor.arm(self.dep)
        assert self.alarms.subscriptions[monitor.handle] == (
            "http_requests_failed_total", 10, 120.0, 3
        )

    @pytest.mark.parametrize("periods, breached", [(1, True), (2, False)])
    def test_configured_periods_reach_local_alarm(self, periods, breached):
        now = {"t": 0.0}
        alarms = LocalAlarmService(clock=lambda: now["t"])
        config = DeploymentConfig(
            alarm_threshold=2, alarm_window_seconds=60, alarm_evaluation_periods=periods
        )
        monitor = HealthMonitor(self.client, alarms, config, sleep=_no_sleep)
        monitor.arm(self.dep)
        for _ in range(3):
            alarms.record_request(config.alarm_metric, status_code=502)
        now["t"] = 60
        assert monitor.check(self.dep).alarm_breached is breached

    def test_alarm_breach(self):
        self.monitor.arm(self.dep)
        self.alarms.breach()
        report = self.monitor.check(self.dep)
        assert report.breached
        assert "alarm" in report.reason
        assert self.dep.alarm.breached

    def test_three_consecutive_unhealthy(self):
        self.monitor.arm(self.dep)
        self.router.set_health("notes-green", HealthStatus.UNHEALTHY)
        assert not self.monitor.check(self.dep).breached
        assert not self.monitor.check(self.dep).breached
        report = self.monitor.check(self.dep)
        assert report.target_breached
        assert report.consecutive_unhealthy == 3

    def test_healthy_resets_and_unknown_keeps_counter(self):
        self.monitor.arm(self.dep)
        self.router.script_health(
            "notes-green",
            [
                HealthStatus.UNHEALTHY,
                HealthStatus.UNHEALTHY,
                HealthStatus.HEALTHY,
                HealthStatus.UNHEALTHY,
                HealthStatus.UNKNOWN,
                HealthStatus.UNHEALTHY,
            ],
        )
        reports = [self.monitor.check(self.dep) for _ in range(6)]
        assert [r.consecutive_unhealthy for r in reports] == [1, 2, 0, 1, 1, 2]
        assert not any(r.breached for r in reports)

    def test_advisory_mode_does_not_block(self):
        monitor = HealthMonitor(
            self.client,
            self.alarms,
            DeploymentConfig(gate_mode=GateMode.ADVISORY),
            sleep=_no_sleep,
        )
        monitor.arm(self.dep)
        self.alarms.breach()
        report = monitor.check(self.dep)
        assert report.breached is False
        assert report.advisory is True

    def test_disarm_resets_alarm_state(self):
        self.monitor.arm(self.dep)
        self.alarms.breach()
        self.monitor.check(self.dep)
        self.monitor.disarm(self.dep)
        assert self.dep.alarm.armed is False
        assert self.dep.alarm.breached is False

    def test_await_ready(self):
        clock = ManualClock()
        self.router.script_health(
            "notes-green", [HealthStatus.UNKNOWN, HealthStatus.UNKNOWN, HealthStatus.HEALTHY]
        )
        self.monitor.await_ready(self.dep, clock, CancellationToken())
        assert clock.monotonic() == 20
        assert self.dep.green.health_status == HealthStatus.HEALTHY

    def test_await_ready_grace_expires(self):
        clock = ManualClock()
        self.router.set_health("notes-green", HealthStatus.UNHEALTHY)
        with pytest.raises(ProvisioningError):
            self.monitor.await_ready(self.dep, clock, CancellationToken())
        assert clock.monotonic() == 120


# ── Traffic Shifter Tests ────────────────────────────────────────────


class TestTrafficShifter:
    def setup_method(self):
        self.clock = ManualClock()
        self.router = InMemoryTrafficRouter()
        self.alarms = InMemoryAlarmService()
        self.client = TrafficRouterClient(self.router, sleep=_no_sleep)
        self.config = DeploymentConfig()
        self.monitor = HealthMonitor(self.client, self.alarms, self.config, sleep=_no_sleep)
        self.dep = make_deployment()
        self.monitor.arm(self.dep)
        self.shifter = TrafficShifter(self.client, self.monitor, self.clock, self.config)

    def test_full_linear_shift(self):
        result = self.shifter.run(self.dep, CancellationToken(), Deadline(self.clock, 1200))
        assert self.router.green_weights == list(range(10, 101, 10))
        assert all(b + g == 100 for b, g in self.dep.weight_history)
        assert self.clock.monotonic() == 600
        assert result.steps_applied == 10
        assert result.health_checks == 21
        assert result.final_green_weight == 100

    def test_breach_short_circuits(self):
        self.router.on_weights(lambda targets, w: self.alarms.breach() if w == 40 else None)
        with pytest.raises(AlarmTriggeredRollback):
            self.shifter.run(self.dep, CancellationToken(), Deadline(self.clock, 1200))
        assert self.router.green_weights == [10, 20, 30, 40]
        assert self.clock.monotonic() == 240 + self.config.health_check_interval_seconds

    def test_abort_stops_shift(self):
        token = CancellationToken()
        self.clock.call_at(100, lambda: token.cancel("stop"))
        with pytest.raises(DeploymentAborted):
            self.shifter.run(self.dep, token, Deadline(self.clock, 1200))
        assert self.router.green_weights == [10]

    def test_deadline_stops_shift(self):
        with pytest.raises(DeploymentTimeoutError):
            self.shifter.run(self.dep, CancellationToken(), Deadline(self.clock, 200))
        assert self.clock.monotonic() == 200

    def test_custom_schedule_at_offset_zero(self):
        self.dep.schedule = TrafficSchedule.from_pairs([(0, 50), (0, 100)])
        self.shifter.run(self.dep, CancellationToken())
        assert self.router.green_weights == [50, 100]
        assert self.clock.monotonic() == 0


# ── Rollback Tests ───────────────────────────────────────────────────


class TestRollbackController:
    def setup_method(self):
        self.router = InMemoryTrafficRouter()
        self.client = TrafficRouterClient(self.router, sleep=_no_sleep)
        self.terminated = []
        self.controller = RollbackController(self.client, terminator=self.terminated.append)
        self.dep = make_deployment()
        self.client.apply_weights(self.dep, 60)

    def test_rollback_reverts_in_one_update(self):
        action = self.controller.rollback(self.dep, "alarm")
        assert action.success
        assert action.green_weight_at_trigger == 60
        assert self.router.green_weights == [60, 0]
        assert self.dep.weights == (100, 0)
        assert self.dep.green.marked_for_termination
        assert self.terminated == [self.dep.green]

    def test_rollback_is_idempotent(self):
        first = self.controller.rollback(self.dep, "alarm")
        second = self.controller.rollback(self.dep, "again", triggered_by="operator")
        assert second is first
        assert self.router.green_weights == [60, 0]
        assert len(self.terminated) == 1

    def test_failed_rollback_can_be_retried(self):
        self.router.unavailable_weights.add(0)
        with pytest.raises(TrafficShiftError):
            self.controller.rollback(self.dep, "alarm")
        assert self.controller.get_rollback(self.dep.deployment_id).success is False
        self.router.unavailable_weights.clear()
        assert self.controller.rollback(self.dep, "alarm").success

    def test_decommission_marks_once(self):
        self.controller.decommission(self.dep.blue)
        self.controller.decommission(self.dep.blue)
        assert self.dep.blue.marked_for_termination
        assert self.terminated == [self.dep.blue]

    def test_list_and_stats(self):
        self.controller.rollback(self.dep, "alarm")
        assert [a.service for a in self.controller.list_rollbacks("notes")] == ["notes"]
        assert self.controller.list_rollbacks("other") == []
        stats = self.controller.get_rollback_stats()
        assert stats["total"] == 1
        assert stats["successful"] == 1
        assert stats["failed"] == 0

    def test_rollbacks_of_different_services_run_independently(self):
        router = BlockingRouter("notes-green")
        controller = RollbackController(TrafficRouterClient(router, sleep=_no_sleep))
        notes = make_deployment()
        api = make_deployment(service="api")

        notes_thread = threading.Thread(target=controller.rollback, args=(notes, "alarm"))
        notes_thread.start()
        assert router.entered.wait(2)

        api_done = threading.Event()

        def rollback_api():
            controller.rollback(api, "alarm")
            api_done.set()

        threading.Thread(target=rollback_api, daemon=True).start()
        try:
            assert api_done.wait(2)
            assert controller.get_rollback(api.deployment_id).success
            assert controller.get_rollback(notes.deployment_id).success is False
        finally:
            router.release.set()
            notes_thread.join(5)
        assert controller.get_rollback(notes.deployment_id).success


class BlockingRouter(InMemoryTrafficRouter):
    """Router whose revert of one green target hangs until released."""

    def __init__(self, blocked_target):
        super().__init__()
        self.blocked_target = blocked_target
        self.entered = threading.Event()
        self.release = threading.Event()

    def set_weights(self, targets, green_weight):
        if targets.green_target == self.blocked_target:
            self.entered.set()
            self.release.wait(10)
        super().set_weights(targets, green_weight)


# ── Smoke Test Runner Tests ──────────────────────────────────────────


class TestSmokeTestRunner:
    def _runner(self, handler, clock=None):
        self.clock = clock or ManualClock()
        client = httpx.Client(transport=httpx.MockTransport(handler))
        return SmokeTestRunner(DeploymentConfig(), clock=self.clock, client=client)

    @pytest.mark.parametrize("status", [200, 301, 302])
    def test_success_codes(self, status):
        runner = self._runner(lambda r: httpx.Response(status, headers={"location": "/x"}))
        result = runner.run("http://notes.example/")
        assert result.status_code == status
        assert result.attempts == 1

    def test_redirect_not_followed(self):
        requests = []

        def handler(request):
            requests.append(request.url.path)
            return httpx.Response(301, headers={"location": "/elsewhere"})

        self._runner(handler).run("http://notes.example/")
        assert requests == ["/"]

    def test_recovers_after_retries(self):
        statuses = iter([503, 502, 200])
        runner = self._runner(lambda r: httpx.Response(next(statuses)))
        result = runner.run("http://notes.example/")
        assert result.attempts == 3
        assert self.clock.sleeps == [10.0, 10.0]

    def test_exhausts_attempts(self):
        runner = self._runner(lambda r: httpx.Response(503))
        with pytest.raises(SmokeTestFailure) as exc_info:
            runner.run("http://notes.example/")
        assert exc_info.value.attempts == 5
        assert exc_info.value.last_status == 503
        assert self.clock.monotonic() == 40

    def test_transport_errors(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        with pytest.raises(SmokeTestFailure) as exc_info:
            self._runner(handler).run("http://notes.example/")
        assert exc_info.value.last_status is None
        assert "ConnectError" in exc_info.value.last_error

    def test_abort_during_wait(self):
        token = CancellationToken()
        clock = ManualClock()
        clock.call_at(5, lambda: token.cancel("stop"))
        runner = self._runner(lambda r: httpx.Response(500), clock=clock)
        with pytest.raises(DeploymentAborted):
            runner.run("http://notes.example/", token=token)

    def test_requires_url(self):
        with pytest.raises(ValueError):
            self._runner(lambda r: httpx.Response(200)).run()
