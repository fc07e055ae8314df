from datetime import UTC, datetime

import httpx
import pytest

from lunar_commit_stats.clients.errors.github import RateLimitedError, TransientRemoteError
from lunar_commit_stats.clients.github import GitHubCommitClient
from lunar_commit_stats.clients.models.github import CommitRecord, DiffSize, Repository
from lunar_commit_stats.pipeline.cancellation import AnalysisCancelledError, AnalysisTimeoutError, CancellationToken
from lunar_commit_stats.pipeline.walker import CommitFilter, CommitWalker, batched
from tests.conftest import NEW_MOON_AT, USERNAME, FakeClock, FakeGitHub, commit_payload, rate_limit_response, spaced_commit_payloads

REPOSITORY = Repository(owner=USERNAME, name="hello-world", fork=False)

COMMITS_PATH = "/repos/octocat/hello-world/commits"


def make_commit(login: str | None, email: str | None) -> CommitRecord:
    return CommitRecord(sha="abc123", author_login=login, author_email=email, timestamp=datetime.fromisoformat(NEW_MOON_AT))


@pytest.fixture
def commit_filter() -> CommitFilter:
    return CommitFilter(username=USERNAME, verified_emails=["Octocat@Example.com"])


@pytest.fixture
def walker(commit_client: GitHubCommitClient, commit_filter: CommitFilter, fake_clock: FakeClock) -> CommitWalker:
    return CommitWalker(commit_client=commit_client, commit_filter=commit_filter, sleep=fake_clock.sleep)


class TestCommitFilter:
    def test_keeps_the_user(self, commit_filter: CommitFilter):
        assert not commit_filter.excludes(make_commit(login=USERNAME, email="octocat@example.com"))

    def test_keeps_other_humans(self, commit_filter: CommitFilter):
        assert not commit_filter.excludes(make_commit(login="hubot", email="hubot@example.com"))

    def test_excludes_bots(self, commit_filter: CommitFilter):
        assert commit_filter.excludes(make_commit(login="dependabot[bot]", email="49699333+dependabot[bot]@users.noreply.github.com"))
        assert commit_filter.excludes(make_commit(login="renovate[bot]", email=None))
        assert commit_filter.excludes(make_commit(login="github-actions[bot]", email="actions@github.com"))

    def test_excludes_automation_emails(self, commit_filter: CommitFilter):
        assert commit_filter.excludes(make_commit(login=None, email="noreply@github.com"))
        assert commit_filter.excludes(make_commit(login=None, email="Actions@GitHub.com"))

    def test_username_overrides_automation(self, commit_filter: CommitFilter):
        assert not commit_filter.excludes(make_commit(login=USERNAME, email="noreply@github.com"))

    def test_verified_email_overrides_automation(self, commit_filter: CommitFilter):
        assert not commit_filter.excludes(make_commit(login="web-flow", email="OCTOCAT@example.com"))
        assert commit_filter.excludes(make_commit(login="web-flow", email="someone-else@example.com"))

    def test_filter(self, commit_filter: CommitFilter):
        commits = [make_commit(login=USERNAME, email=None), make_commit(login="dependabot[bot]", email=None)]

        assert commit_filter.filter(commits) == commits[:1]


def test_batched():
    assert batched([1, 2, 3, 4, 5, 6, 7], 5) == [[1, 2, 3, 4, 5], [6, 7]]
    assert batched([], 5) == []


async def test_list_commits_filters_automation(walker: CommitWalker, fake_github: FakeGitHub):
    fake_github.add_repository(
        name="hello-world",
        commits=[
            commit_payload(sha="mine", date=NEW_MOON_AT),
            commit_payload(sha="bot", date=NEW_MOON_AT, login="dependabot[bot]", email="support@github.com"),
        ],
    )

    commits: list[CommitRecord] = await walker.list_commits(repository=REPOSITORY)

    assert [commit.sha for commit in commits] == ["mine"]


async def test_list_commits_walks_every_page(commit_client: GitHubCommitClient, commit_filter: CommitFilter, fake_github: FakeGitHub):
    fake_github.add_repository(name="hello-world", commits=spaced_commit_payloads(count=5))

    walker = CommitWalker(commit_client=commit_client, commit_filter=commit_filter, per_page=2)

    commits: list[CommitRecord] = await walker.list_commits(repository=REPOSITORY)

    assert len(commits) == 5
    assert [request.url.params["page"] for request in fake_github.requests_to(COMMITS_PATH)] == ["1", "2", "3"]


async def test_list_commits_retries_once_after_rate_limit(walker: CommitWalker, fake_github: FakeGitHub, fake_clock: FakeClock):
    fake_github.add_repository(name="hello-world", commits=spaced_commit_payloads(count=2))
    fake_github.fail(COMMITS_PATH, rate_limit_response(status_code=403, reset_in_seconds=60))

    commits: list[CommitRecord] = await walker.list_commits(repository=REPOSITORY)

    assert len(commits) == 2
    assert any(50 < seconds <= 60 for seconds in fake_clock.sleeps)


async def test_list_commits_gives_up_after_second_rate_limit(walker: CommitWalker, fake_github: FakeGitHub):
    fake_github.add_repository(name="hello-world", commits=spaced_commit_payloads(count=2))
    fake_github.fail(COMMITS_PATH, rate_limit_response(status_code=429), rate_limit_response(status_code=429))

    with pytest.raises(RateLimitedError):
        await walker.list_commits(repository=REPOSITORY)

    assert len(fake_github.requests_to(COMMITS_PATH)) == 2


async def test_detailed_batches(walker: CommitWalker, fake_github: FakeGitHub):
    payloads = spaced_commit_payloads(count=7)
    fake_github.add_repository(name="hello-world", commits=payloads)
    for index, payload in enumerate(payloads):
        fake_github.stats[payload["sha"]] = {"additions": index, "deletions": 1, "total": index + 1}

    commits: list[CommitRecord] = await walker.list_commits(repository=REPOSITORY)

    batches: list[list[CommitRecord]] = [batch async for batch in walker.iter_detailed_batches(repository=REPOSITORY, commits=commits)]

    assert [len(batch) for batch in batches] == [5, 2]
    assert [commit.sha for batch in batches for commit in batch] == [payload["sha"] for payload in payloads]
    assert batches[1][1].diff_size == DiffSize(additions=6, deletions=1, total=7)


async def test_failed_detail_keeps_commit_without_stats(walker: CommitWalker, fake_github: FakeGitHub):
    payloads = spaced_commit_payloads(count=3)
    fake_github.add_repository(name="hello-world", commits=payloads)
    for payload in payloads:
        fake_github.stats[payload["sha"]] = {"additions": 2, "deletions": 2, "total": 4}
    fake_github.fail(f"{COMMITS_PATH}/c001", httpx.Response(500, text="Internal Server Error"))

    commits: list[CommitRecord] = await walker.list_commits(repository=REPOSITORY)

    batches = [batch async for batch in walker.iter_detailed_batches(repository=REPOSITORY, commits=commits)]

    assert [commit.diff_size is not None for commit in batches[0]] == [True, False, True]


async def test_rate_limited_detail_is_retried(walker: CommitWalker, fake_github: FakeGitHub, fake_clock: FakeClock):
    fake_github.add_repository(name="hello-world", commits=spaced_commit_payloads(count=1))
    fake_github.stats["c000"] = {"additions": 3, "deletions": 0, "total": 3}
    fake_github.fail(f"{COMMITS_PATH}/c000", rate_limit_response(status_code=403, reset_in_seconds=60))

    commits: list[CommitRecord] = await walker.list_commits(repository=REPOSITORY)

    batches = [batch async for batch in walker.iter_detailed_batches(repository=REPOSITORY, commits=commits)]

    assert batches[0][0].diff_size == DiffSize(additions=3, deletions=0, total=3)
    assert len(fake_github.requests_to(f"{COMMITS_PATH}/c000")) == 2
    assert any(50 < seconds <= 60 for seconds in fake_clock.sleeps)


async def test_cancelled_walk_stops_at_batch_boundary(walker: CommitWalker, fake_github: FakeGitHub):
    fake_github.add_repository(name="hello-world", commits=spaced_commit_payloads(count=7))
    commits: list[CommitRecord] = await walker.list_commits(repository=REPOSITORY)
    cancellation_token = CancellationToken()

    seen: list[CommitRecord] = []

    with pytest.raises(AnalysisCancelledError):
        async for batch in walker.iter_detailed_batches(repository=REPOSITORY, commits=commits, cancellation_token=cancellation_token):
            seen.extend(batch)
            cancellation_token.cancel()

    assert len(seen) == 5


async def test_forbidden_repository_is_not_waited_on(walker: CommitWalker, fake_github: FakeGitHub, fake_clock: FakeClock):
    fake_github.add_repository(name="hello-world", commits=spaced_commit_payloads(count=2))
    fake_github.fail(
        COMMITS_PATH,
        httpx.Response(
            403,
            json={"message": "Resource protected by organization SAML enforcement."},
            headers={"x-ratelimit-remaining": "4990", "x-ratelimit-reset": str(int(datetime.now(tz=UTC).timestamp()) + 3000)},
        ),
    )

    with pytest.raises(TransientRemoteError):
        await walker.list_commits(repository=REPOSITORY)

    assert all(seconds < 5 for seconds in fake_clock.sleeps)
    assert len(fake_github.requests_to(COMMITS_PATH)) == 1


async def test_rate_limit_wait_is_capped_by_deadline(
    commit_client: GitHubCommitClient, commit_filter: CommitFilter, fake_github: FakeGitHub, fake_clock: FakeClock
):
    fake_github.add_repository(name="hello-world", commits=spaced_commit_payloads(count=2))
    fake_github.fail(COMMITS_PATH, rate_limit_response(status_code=403, reset_in_seconds=600))

    walker = CommitWalker(
        commit_client=commit_client,
        commit_filter=commit_filter,
        cancellation_token=CancellationToken(timeout_seconds=10, clock=fake_clock.time),
        sleep=fake_clock.sleep,
    )

    with pytest.raises(AnalysisTimeoutError):
        await walker.list_commits(repository=REPOSITORY)

    assert max(fake_clock.sleeps) <= 10
    assert len(fake_github.requests_to(COMMITS_PATH)) == 1


async def test_cancelled_walk_does_not_wait_for_rate_limit(
    commit_client: GitHubCommitClient, commit_filter: CommitFilter, fake_github: FakeGitHub, fake_clock: FakeClock
):
    fake_github.add_repository(name="hello-world", commits=spaced_commit_payloads(count=2))
    fake_github.fail(COMMITS_PATH, rate_limit_response(status_code=403, reset_in_seconds=600))
    cancellation_token = CancellationToken()
    cancellation_token.cancel(reason="Observer went away")

    walker = CommitWalker(commit_client=commit_client, commit_filter=commit_filter, cancellation_token=cancellation_token, sleep=fake_clock.sleep)

    with pytest.raises(AnalysisCancelledError, match="Observer went away"):
        await walker.list_commits(repository=REPOSITORY)

    assert fake_clock.sleeps == []
