"""Tests for the review pipeline."""

import asyncio

import httpx
import pytest

from tests.conftest import DESKTOP, MOBILE, FakeAnalysisClient, FakeLauncher, open_repo
from ui_review.database.screenshots import ScreenshotStore
from ui_review.errors import AnalysisConnectionError, SessionBusyError
from ui_review.models.page import PageSpec, TokenAuthSpec
from ui_review.models.report import Report
from ui_review.review.pipeline import DRY_RUN_SUMMARY, ReviewPipeline
from ui_review.review.tokens import TokenInjector
from ui_review.session_manager.registry import Session, SessionRegistry
from ui_review.session_manager.supervisor import CrashSupervisor

BASE_URL = "https://example.test"


class Recorder:
    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    async def __call__(self, event: str, **data):
        self.events.append((event, data))

    def names(self) -> list[str]:
        return [e for e, _ in self.events]


def _token_injector() -> TokenInjector:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/token-a":
            return httpx.Response(500, json={"error": "boom"})
        return httpx.Response(200, json={"token": "tok-b"})

    return TokenInjector(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def _pipeline(repo, tmp_path, analysis=None, launcher=None, supervisor=None, tokens=None):
    return ReviewPipeline(
        analysis or FakeAnalysisClient(),
        repo,
        ScreenshotStore(tmp_path / "shots"),
        launcher or FakeLauncher(),
        supervisor,
        tokens or _token_injector(),
    )


def _report(pages, viewports) -> Report:
    return Report(base_url=BASE_URL, total_expected=len(pages) * len(viewports))


def test_token_failure_is_scoped_to_its_page(tmp_path) -> None:
    pages = [
        PageSpec(name="A", path="/a", token_auth=TokenAuthSpec(endpoint="/api/token-a")),
        PageSpec(name="B", path="/b", token_auth=TokenAuthSpec(endpoint="/api/token-b")),
    ]
    viewports = [DESKTOP, MOBILE]

    async def scenario():
        db, repo = await open_repo(tmp_path)
        launcher = FakeLauncher()
        pipeline = _pipeline(repo, tmp_path, launcher=launcher)
        report = await pipeline.run(_report(pages, viewports), BASE_URL, pages, viewports)
        stored = await repo.get_report(report.id)
        await db.close()
        return report, stored, launcher

    report, stored, launcher = asyncio.run(scenario())

    assert report.status == "complete"
    assert sorted(report.errors) == ["A::desktop", "A::mobile"]
    assert all(e.message.startswith("Token generation failed") for e in report.errors.values())
    assert sorted(report.results) == ["B::desktop", "B::mobile"]
    assert stored.summary == report.summary
    assert all("token=tok-b" in url for url in launcher.handles[0].visited)
    # token never leaks into the stored result
    assert all("tok-b" not in r.url for r in report.results.values())


def test_non_persistent_run_closes_its_browser(tmp_path) -> None:
    pages = [PageSpec(name="Home", path="/")]

    async def scenario():
        db, repo = await open_repo(tmp_path)
        launcher = FakeLauncher()
        recorder = Recorder()
        report = await _pipeline(repo, tmp_path, launcher=launcher).run(
            _report(pages, [DESKTOP]), BASE_URL, pages, [DESKTOP], emit=recorder
        )
        await db.close()
        return report, launcher, recorder

    report, launcher, recorder = asyncio.run(scenario())

    assert report.status == "complete"
    assert len(launcher.handles) == 1
    assert launcher.handles[0].closed
    assert recorder.names()[0] == "report-id"
    assert recorder.names()[-1] == "done"
    assert "result" in recorder.names()
    assert list((tmp_path / "shots").rglob("home_desktop.png"))


def test_busy_session_is_refused(tmp_path) -> None:
    pages = [PageSpec(name="Home", path="/")]

    async def scenario():
        db, repo = await open_repo(tmp_path)
        launcher = FakeLauncher()
        handle = await launcher.launch()
        session = Session(handle, await handle.new_page(DESKTOP), BASE_URL, pages, [DESKTOP])
        session.try_acquire()
        try:
            with pytest.raises(SessionBusyError):
                await _pipeline(repo, tmp_path, launcher=launcher).run(
                    _report(pages, [DESKTOP]), BASE_URL, pages, [DESKTOP], session=session
                )
        finally:
            await db.close()
        return session

    session = asyncio.run(scenario())
    assert session.busy


def test_health_check_failure_ends_run_with_error(tmp_path) -> None:
    pages = [PageSpec(name="Home", path="/")]

    async def scenario():
        db, repo = await open_repo(tmp_path)
        analysis = FakeAnalysisClient()
        analysis.health_error = AnalysisConnectionError("Cannot connect to Ollama")
        launcher = FakeLauncher()
        recorder = Recorder()
        report = await _pipeline(repo, tmp_path, analysis=analysis, launcher=launcher).run(
            _report(pages, [DESKTOP]), BASE_URL, pages, [DESKTOP], emit=recorder
        )
        await db.close()
        return report, launcher, recorder

    report, launcher, recorder = asyncio.run(scenario())

    assert report.status == "error"
    assert "Cannot connect" in report.error
    assert launcher.handles == []
    assert recorder.names()[-1] == "error"


def test_abort_during_analysis_interrupts_run(tmp_path) -> None:
    pages = [PageSpec(name="Home", path="/"), PageSpec(name="About", path="/about")]

    async def scenario():
        db, repo = await open_repo(tmp_path)
        abort = asyncio.Event()
        analysis = FakeAnalysisClient()

        async def disconnect():
            abort.set()
            await asyncio.Event().wait()

        analysis.on_analyze = disconnect
        report = await _pipeline(repo, tmp_path, analysis=analysis).run(
            _report(pages, [DESKTOP]), BASE_URL, pages, [DESKTOP], abort=abort
        )
        await db.close()
        return report, analysis

    report, analysis = asyncio.run(scenario())

    assert report.status == "interrupted"
    assert len(analysis.calls) == 1
    assert report.results == {}


def test_skipped_keys_are_not_redone(tmp_path) -> None:
    pages = [PageSpec(name="Home", path="/"), PageSpec(name="About", path="/about")]

    async def scenario():
        db, repo = await open_repo(tmp_path)
        analysis = FakeAnalysisClient()
        recorder = Recorder()
        report = await _pipeline(repo, tmp_path, analysis=analysis).run(
            _report(pages, [DESKTOP]), BASE_URL, pages, [DESKTOP],
            emit=recorder, skip={"Home::desktop"},
        )
        await db.close()
        return report, analysis, recorder

    report, analysis, recorder = asyncio.run(scenario())

    assert len(analysis.calls) == 1
    assert list(report.results) == ["About::desktop"]
    assert any(e == "progress" and d.get("status") == "skipped" for e, d in recorder.events)


def test_raw_answer_is_reformatted(tmp_path) -> None:
    pages = [PageSpec(name="Home", path="/")]
    structured = {
        "summary": "Restructured",
        "issues": [{"severity": "critical", "category": "layout", "description": "Overlap"}],
    }

    async def scenario():
        db, repo = await open_repo(tmp_path)
        analysis = FakeAnalysisClient([
            {"issues": [], "summary": "The header overlaps the hero.", "_raw": True},
            structured,
        ])
        report = await _pipeline(repo, tmp_path, analysis=analysis).run(
            _report(pages, [DESKTOP]), BASE_URL, pages, [DESKTOP]
        )
        await db.close()
        return report, analysis

    report, analysis = asyncio.run(scenario())

    result = report.results["Home::desktop"]
    assert not result.raw
    assert result.summary == "Restructured"
    assert len(analysis.calls) == 2
    assert analysis.calls[1]["images"] == []


def test_failed_reformat_keeps_raw_result(tmp_path) -> None:
    pages = [PageSpec(name="Home", path="/")]

    async def scenario():
        db, repo = await open_repo(tmp_path)
        analysis = FakeAnalysisClient([
            {"issues": [], "summary": "just prose", "_raw": True},
            AnalysisConnectionError("gone"),
        ])
        report = await _pipeline(repo, tmp_path, analysis=analysis).run(
            _report(pages, [DESKTOP]), BASE_URL, pages, [DESKTOP]
        )
        await db.close()
        return report

    report = asyncio.run(scenario())

    assert report.status == "complete"
    assert report.results["Home::desktop"].raw
    assert report.results["Home::desktop"].summary == "just prose"


def test_analysis_failure_is_recorded_per_key(tmp_path) -> None:
    pages = [PageSpec(name="Home", path="/"), PageSpec(name="About", path="/about")]

    async def scenario():
        db, repo = await open_repo(tmp_path)
        analysis = FakeAnalysisClient([AnalysisConnectionError("model crashed")])
        recorder = Recorder()
        report = await _pipeline(repo, tmp_path, analysis=analysis).run(
            _report(pages, [DESKTOP]), BASE_URL, pages, [DESKTOP], emit=recorder
        )
        await db.close()
        return report, recorder

    report, recorder = asyncio.run(scenario())

    assert report.status == "complete"
    assert report.errors["Home::desktop"].message == "model crashed"
    assert "About::desktop" in report.results
    assert "page-error" in recorder.names()


def test_session_crash_recovers_and_continues(tmp_path) -> None:
    pages = [PageSpec(name="Home", path="/"), PageSpec(name="About", path="/about")]

    async def scenario():
        db, repo = await open_repo(tmp_path)
        launcher = FakeLauncher()
        registry = SessionRegistry()
        supervisor = CrashSupervisor(registry, launcher)
        handle = await launcher.launch()
        session = Session(handle, await handle.new_page(DESKTOP), BASE_URL, pages, [DESKTOP])
        supervisor.watch(session)
        handle.crash_on_goto = True

        report = await _pipeline(repo, tmp_path, launcher=launcher, supervisor=supervisor).run(
            _report(pages, [DESKTOP]), BASE_URL, pages, [DESKTOP], session=session
        )
        await db.close()
        return report, session, launcher

    report, session, launcher = asyncio.run(scenario())

    assert report.status == "complete"
    assert "Home::desktop" in report.errors
    assert "About::desktop" in report.results
    assert len(launcher.handles) == 2
    assert session.browser is launcher.handles[1]
    assert not session.busy


def test_session_crash_without_recovery_ends_run(tmp_path) -> None:
    pages = [PageSpec(name="Home", path="/"), PageSpec(name="About", path="/about")]

    async def scenario():
        db, repo = await open_repo(tmp_path)
        launcher = FakeLauncher()
        registry = SessionRegistry()
        supervisor = CrashSupervisor(registry, launcher)
        handle = await launcher.launch()
        session = Session(handle, await handle.new_page(DESKTOP), BASE_URL, pages, [DESKTOP])
        supervisor.watch(session)
        handle.crash_on_goto = True
        launcher.fail = True

        report = await _pipeline(repo, tmp_path, launcher=launcher, supervisor=supervisor).run(
            _report(pages, [DESKTOP]), BASE_URL, pages, [DESKTOP], session=session
        )
        await db.close()
        return report

    report = asyncio.run(scenario())

    assert report.status == "error"
    assert "could not be relaunched" in report.error
    assert "About::desktop" not in report.results


def test_failed_rerun_drops_the_earlier_result(tmp_path) -> None:
    pages = [PageSpec(name="Home", path="/")]

    async def scenario():
        db, repo = await open_repo(tmp_path)
        launcher = FakeLauncher()
        handle = await launcher.launch()
        session = Session(handle, await handle.new_page(DESKTOP), BASE_URL, pages, [DESKTOP])
        analysis = FakeAnalysisClient()
        pipeline = _pipeline(repo, tmp_path, analysis=analysis, launcher=launcher)
        report = _report(pages, [DESKTOP])

        await pipeline.run(report, BASE_URL, pages, [DESKTOP], session=session)
        first_results = list(report.results)
        analysis.responses.append(AnalysisConnectionError("model crashed"))
        await pipeline.run(report, BASE_URL, pages, [DESKTOP], session=session)
        stored = await repo.get_report(report.id)
        await db.close()
        return first_results, stored

    first_results, stored = asyncio.run(scenario())

    assert first_results == ["Home::desktop"]
    assert list(stored.errors) == ["Home::desktop"]
    assert stored.results == {}
    assert stored.summary.pages == 0


def test_dry_run_stores_screenshots_without_analysis(tmp_path) -> None:
    pages = [PageSpec(name="Home", path="/"), PageSpec(name="About", path="/about")]

    async def scenario():
        db, repo = await open_repo(tmp_path)
        analysis = FakeAnalysisClient()
        analysis.health_error = AnalysisConnectionError("Cannot connect to Ollama")
        recorder = Recorder()
        report = await _pipeline(repo, tmp_path, analysis=analysis).run(
            _report(pages, [DESKTOP, MOBILE]), BASE_URL, pages, [DESKTOP, MOBILE],
            emit=recorder, dry_run=True,
        )
        await db.close()
        return report, analysis, recorder

    report, analysis, recorder = asyncio.run(scenario())

    assert report.status == "complete"
    assert analysis.calls == []
    assert len(report.results) == 4
    assert report.results["About::mobile"].summary == DRY_RUN_SUMMARY
    assert report.results["About::mobile"].issues == []
    assert len(list((tmp_path / "shots").rglob("*.png"))) == 4
    assert "health-check" not in [d.get("status") for e, d in recorder.events if e == "progress"]
