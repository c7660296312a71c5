import json
import threading
import unittest
from unittest.mock import patch

from ml_job_crawler import crawl_jobs, orchestrator, ranker
from ml_job_crawler.config import CrawlerConfig, RankingConfig, SourcesConfig
from ml_job_crawler.errors import InvalidRequest, SourceUnavailable
from ml_job_crawler.models import EventType, LogLevel, RunMode, RunStatus
from ml_job_crawler.orchestrator import CrawlService, validate_start_request
from ml_job_crawler.runs import RunRegistry
from ml_job_crawler.sources import Source


def record(i, title="Machine Learning Engineer", company=None):
    return {
        "id": str(i),
        "title": title,
        "company": company or f"Company {i}",
        "location": "Remote",
        "url": f"https://jobs.example/{i}",
        "description": "<p>Build models.</p>",
    }


def static_source(name, records):
    return Source(name=name, label=name.title(), fetch=lambda: list(records))


def failing_source(name, reason="HTTP 503"):
    def fetch():
        raise SourceUnavailable(name.title(), reason)
    return Source(name=name, label=name.title(), fetch=fetch)


def make_service(sources, concurrent=True, **ranking):
    config = CrawlerConfig(
        sources=SourcesConfig(concurrent=concurrent),
        ranking=RankingConfig(**ranking),
    )
    return CrawlService(RunRegistry(), config, sources=sources)


def warnings_of(run):
    return [e for e in run.events if e.level == LogLevel.warning]


class TestValidateStartRequest(unittest.TestCase):
    def test_modes(self):
        self.assertIs(validate_start_request("standard"), RunMode.standard)
        self.assertIs(validate_start_request("advanced", "sk-1"), RunMode.advanced)

    def test_rejects_bad_mode(self):
        for mode in ("turbo", "", None, 3):
            with self.assertRaises(InvalidRequest):
                validate_start_request(mode)

    def test_advanced_requires_token(self):
        for token in (None, "", "   "):
            with self.assertRaises(InvalidRequest) as ctx:
                validate_start_request("advanced", token)
            self.assertIn("llmToken", str(ctx.exception))

    def test_token_must_be_string(self):
        with self.assertRaises(InvalidRequest):
            validate_start_request("standard", 42)


class TestCrawlService(unittest.IsolatedAsyncioTestCase):
    async def test_standard_run_with_one_failing_source(self):
        service = make_service([
            static_source("alpha", [record(1), record(2), record(3, title="Accountant")]),
            failing_source("beta"),
            static_source("gamma", [record(4, title="NLP Researcher")]),
        ])
        run = await service.wait(service.start("standard"))

        self.assertEqual(run.status, RunStatus.completed)
        self.assertEqual(run.progress, 100)
        self.assertEqual(len(run.jobs), 3)
        self.assertEqual([j.source for j in run.jobs], ["Alpha", "Alpha", "Gamma"])

        warnings = warnings_of(run)
        self.assertEqual(len(warnings), 1)
        self.assertEqual(warnings[0].message, "Beta failed: HTTP 503")
        found = [e.message for e in run.events if "found" in e.message]
        self.assertEqual(found, [
            "Alpha: found 2 matching ML roles (of 3 listed).",
            "Gamma: found 1 matching ML roles (of 1 listed).",
        ])
        self.assertEqual(run.events[-1].type, EventType.done)

    async def test_all_sources_fail_still_completes(self):
        service = make_service([failing_source("alpha"), failing_source("beta", "timeout")])
        run = await service.wait(service.start("standard"))
        self.assertEqual(run.status, RunStatus.completed)
        self.assertEqual(run.jobs, [])
        self.assertEqual(len(warnings_of(run)), 2)

    async def test_unexpected_fetch_error_is_isolated(self):
        def explode():
            raise KeyError("position")
        service = make_service([
            Source(name="odd", label="Odd", fetch=explode),
            Source(name="wrong", label="Wrong", fetch=lambda: {"jobs": []}),
            static_source("alpha", [record(1)]),
        ])
        run = await service.wait(service.start("standard"))
        self.assertEqual(run.status, RunStatus.completed)
        self.assertEqual(len(run.jobs), 1)
        messages = [e.message for e in warnings_of(run)]
        self.assertTrue(messages[0].startswith("Odd failed: KeyError"))
        self.assertTrue(messages[1].startswith("Wrong failed:"))

    async def test_duplicates_across_sources_collapse(self):
        service = make_service([
            static_source("alpha", [record(1, title="ML Engineer", company="Acme")]),
            static_source("beta", [record(99, title="ml engineer", company="ACME")]),
        ])
        run = await service.wait(service.start("standard"))
        self.assertEqual(len(run.jobs), 1)
        self.assertEqual(run.jobs[0].source, "Alpha")
        self.assertTrue(any("1 duplicates removed" in e.message for e in run.events))

    async def test_progress_is_monotone_and_ends_at_100(self):
        service = make_service([static_source(n, [record(i)]) for i, n in enumerate(("a", "b", "c"))])
        run = await service.wait(service.start("standard"))
        values = [e.progress for e in run.events]
        self.assertEqual(values, sorted(values))
        self.assertEqual(values[-1], 100)
        self.assertEqual(run.events[0].progress, 10)
        self.assertIn(80, values)
        self.assertIn(90, values)

    async def test_concurrent_fold_uses_source_order(self):
        slow_started = threading.Event()
        release = threading.Event()

        def slow():
            slow_started.set()
            release.wait(5)
            return [record(1, title="ML Engineer A")]

        def fast():
            slow_started.wait(5)
            release.set()
            return [record(2, title="ML Engineer B")]

        service = make_service([
            Source(name="slow", label="Slow", fetch=slow),
            Source(name="fast", label="Fast", fetch=fast),
        ])
        run = await service.wait(service.start("standard"))
        self.assertEqual([j.source for j in run.jobs], ["Slow", "Fast"])
        collected = [
            e.stage for e in run.events
            if e.type == EventType.progress and e.stage.startswith("Collected")
        ]
        self.assertEqual(collected, ["Collected Slow", "Collected Fast"])

    async def test_sequential_mode(self):
        calls = []

        def tracked(name, records):
            def fetch():
                calls.append(name)
                return records
            return Source(name=name, label=name.title(), fetch=fetch)

        service = make_service(
            [tracked("alpha", [record(1)]), tracked("beta", [record(2)])],
            concurrent=False,
        )
        run = await service.wait(service.start("standard"))
        self.assertEqual(calls, ["alpha", "beta"])
        stages = [e.stage for e in run.events if e.type == EventType.progress]
        self.assertIn("Crawling Alpha", stages)
        self.assertLess(stages.index("Collected Alpha"), stages.index("Crawling Beta"))

    async def test_standard_truncates_without_model_call(self):
        service = make_service(
            [static_source("alpha", [record(i) for i in range(8)])],
            max_results=5,
        )
        with patch.object(ranker.requests, "post") as post:
            run = await service.wait(service.start("standard"))
        post.assert_not_called()
        self.assertEqual([j.company for j in run.jobs], [f"Company {i}" for i in range(5)])
        self.assertTrue(all(j.fit_score is None for j in run.jobs))

    async def test_advanced_ranking_failure_falls_back(self):
        service = make_service(
            [static_source("alpha", [record(i) for i in range(4)])],
            max_results=3,
        )

        class Unauthorized:
            ok = False
            status_code = 401

        with patch.object(ranker.requests, "post", return_value=Unauthorized()):
            run = await service.wait(service.start("advanced", "sk-bad"))

        self.assertEqual(run.status, RunStatus.completed)
        self.assertEqual(len(run.jobs), 3)
        self.assertEqual([j.title for j in run.jobs], ["Machine Learning Engineer"] * 3)
        warnings = warnings_of(run)
        self.assertEqual(len(warnings), 1)
        self.assertIn("fell back", warnings[0].message)
        self.assertIn("Ranking with language model", [e.stage for e in run.events])

    async def test_advanced_ranking_success(self):
        service = make_service([static_source("alpha", [record(i) for i in range(3)])])
        by_index = {}

        class Resp:
            ok = True
            status_code = 200

            def __init__(self, content):
                self.content = content

            def json(self):
                return {"choices": [{"message": {"content": json.dumps(self.content)}}]}

        def fake_post(url, **kwargs):
            prompt = kwargs["json"]["messages"][1]["content"]
            sent = json.loads(prompt.split("\n", 1)[1])
            by_index.update({i: job["id"] for i, job in enumerate(sent)})
            return Resp({"ranked": [{"id": by_index[2], "fitScore": 95, "rationale": "Best."}], "summary": "Good."})

        with patch.object(ranker.requests, "post", side_effect=fake_post):
            run = await service.wait(service.start("advanced", " sk-good "))

        self.assertEqual(run.jobs[0].id, by_index[2])
        self.assertEqual(run.jobs[0].fit_score, 95)
        self.assertEqual(len(run.jobs), 3)
        self.assertEqual(warnings_of(run), [])
        self.assertTrue(any(e.message == "Model summary: Good." for e in run.events))

    async def test_advanced_with_no_jobs_logs_no_warning(self):
        service = make_service([static_source("alpha", [record(1, title="Accountant")])])
        with patch.object(ranker.requests, "post") as post:
            run = await service.wait(service.start("advanced", "sk"))
        post.assert_not_called()
        self.assertEqual(run.status, RunStatus.completed)
        self.assertEqual(run.jobs, [])
        self.assertEqual(warnings_of(run), [])
        notes = [e for e in run.events if e.message == "No jobs available for model ranking."]
        self.assertEqual(len(notes), 1)
        self.assertEqual(notes[0].level, LogLevel.info)

    async def test_advanced_without_token_creates_no_run(self):
        service = make_service([static_source("alpha", [record(1)])])
        with self.assertRaises(InvalidRequest):
            service.start("advanced", "")
        self.assertEqual(len(service.registry), 0)

    async def test_fatal_error_fails_run_without_rollback(self):
        service = make_service([static_source("alpha", [record(1)])])
        with patch.object(orchestrator, "dedupe_jobs", side_effect=RuntimeError("dedupe exploded")):
            run = await service.wait(service.start("standard"))

        self.assertEqual(run.status, RunStatus.failed)
        last = run.events[-1]
        self.assertEqual(last.type, EventType.error)
        self.assertEqual(last.message, "dedupe exploded")
        self.assertEqual(run.progress, 80)
        self.assertEqual(sum(1 for e in run.events if e.type in (EventType.done, EventType.error)), 1)

    async def test_ranking_crash_is_not_fatal(self):
        service = make_service([static_source("alpha", [record(1)])])
        with patch.object(orchestrator, "rank_jobs", side_effect=RuntimeError("kaboom")):
            run = await service.wait(service.start("advanced", "sk"))
        self.assertEqual(run.status, RunStatus.completed)
        self.assertEqual(len(run.jobs), 1)
        self.assertIn("kaboom", warnings_of(run)[0].message)

    async def test_runs_are_independent(self):
        service = make_service([static_source("alpha", [record(1)])])
        first = service.start("standard")
        second = service.start("standard")
        await service.wait(first)
        await service.wait(second)
        self.assertNotEqual(first.id, second.id)
        self.assertEqual(first.status, RunStatus.completed)
        self.assertEqual(second.status, RunStatus.completed)
        self.assertEqual(len(service.registry.list_runs()), 2)

    async def test_subscriber_sees_full_stream(self):
        service = make_service([static_source("alpha", [record(1)])])
        run = service.start("standard")
        sub = run.subscribe()
        messages = [m async for m in sub]
        self.assertEqual(messages[0]["type"], "snapshot")
        self.assertEqual(messages[-1]["type"], "done")
        self.assertEqual(messages[-1]["jobs"][0]["title"], "Machine Learning Engineer")
        await service.wait(run)


class TestCrawlJobs(unittest.IsolatedAsyncioTestCase):
    async def test_public_entry_point(self):
        config = CrawlerConfig()
        run = await crawl_jobs(config=config, sources=[static_source("alpha", [record(1), record(2)])])
        self.assertEqual(run.status, RunStatus.completed)
        self.assertEqual(len(run.jobs), 2)
        self.assertEqual(json.loads(json.dumps(run.snapshot()))["status"], "completed")

    async def test_invalid_request_raises(self):
        with self.assertRaises(InvalidRequest):
            await crawl_jobs(mode="advanced", config=CrawlerConfig(), sources=[])


if __name__ == "__main__":
    unittest.main()
