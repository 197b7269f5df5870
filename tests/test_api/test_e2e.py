"""End-to-end test: league -> invite -> round -> submit -> vote -> reveal -> standings."""

from collections.abc import AsyncGenerator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from musicleague.auth.deps import SESSION_COOKIE_NAME, SessionPrincipal, sign_session
from musicleague.config import Settings
from musicleague.db.engine import create_engine, create_tables
from musicleague.main import create_app

ClientFactory = Callable[[str | None], AbstractAsyncContextManager[AsyncClient]]


@pytest.fixture
async def app(settings: Settings) -> AsyncGenerator[FastAPI, None]:
    application = create_app(settings)
    engine = create_engine(settings.database_url)
    await create_tables(engine)
    application.state.engine = engine
    yield application
    await engine.dispose()


@pytest.fixture
def client_as(app: FastAPI, settings: Settings) -> ClientFactory:
    """Open a client carrying a session for *user_id* (anonymous when None)."""

    @asynccontextmanager
    async def _open(user_id: str | None) -> AsyncGenerator[AsyncClient, None]:
        cookies = {}
        if user_id is not None:
            cookies[SESSION_COOKIE_NAME] = sign_session(
                settings, SessionPrincipal(user_id=user_id)
            )
        transport = ASGITransport(app=app)
        async with AsyncClient(
            transport=transport, base_url="http://test", cookies=cookies
        ) as client:
            yield client

    return _open


class TestHealth:
    async def test_health(self, client_as: ClientFactory):
        async with client_as(None) as client:
            resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "env": "development"}


class TestErrors:
    async def test_unauthenticated(self, client_as: ClientFactory):
        async with client_as(None) as client:
            resp = await client.post("/api/leagues", json={"name": "Nope"})
        assert resp.status_code == 401

    async def test_domain_error_shape(self, client_as: ClientFactory):
        async with client_as("alice") as alice:
            resp = await alice.get("/api/rounds/does-not-exist")
        assert resp.status_code == 404
        body = resp.json()
        assert body["error"]["code"] == "not_found"
        assert "does-not-exist" in body["error"]["message"]

    async def test_sweep_unknown_league(self, client_as: ClientFactory):
        async with client_as("owner") as owner:
            resp = await owner.post("/api/rounds/sweep", params={"league_id": "missing"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    async def test_private_league_forbidden(self, client_as: ClientFactory):
        async with client_as("owner") as owner:
            league = (await owner.post("/api/leagues", json={"name": "Secret"})).json()["data"]
        async with client_as("stranger") as stranger:
            resp = await stranger.get(f"/api/leagues/{league['id']}")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    async def test_request_validation(self, client_as: ClientFactory):
        async with client_as("owner") as owner:
            resp = await owner.post("/api/leagues", json={"name": ""})
        assert resp.status_code == 422


class TestFullRound:
    async def test_league_lifecycle(self, client_as: ClientFactory):
        async with (
            client_as("owner") as owner,
            client_as("alice") as alice,
            client_as("bob") as bob,
        ):
            # League and invite
            resp = await owner.post(
                "/api/leagues", json={"name": "Friday Tunes", "description": "weekly"}
            )
            assert resp.status_code == 200
            league_id = resp.json()["data"]["id"]

            resp = await owner.post("/api/invites", json={"league_id": league_id, "max_uses": 2})
            invite = resp.json()["data"]
            assert invite["uses"] == 0

            preview = await alice.get(f"/api/invites/preview/{invite['link_token']}")
            assert preview.json()["data"]["name"] == "Friday Tunes"

            for client in (alice, bob):
                resp = await client.post("/api/invites/redeem", json={"code": invite["code"]})
                assert resp.status_code == 200
                assert resp.json()["data"]["role"] == "member"

            resp = await alice.post("/api/invites/redeem", json={"code": invite["code"]})
            assert resp.status_code == 400
            assert resp.json()["error"]["code"] == "failed_precondition"

            members = (await owner.get(f"/api/leagues/{league_id}/members")).json()["data"]
            assert {m["user_id"] for m in members} == {"owner", "alice", "bob"}

            # Round opens
            resp = await owner.post(
                "/api/rounds", json={"league_id": league_id, "theme": "Songs about rain"}
            )
            round_id = resp.json()["data"]["id"]
            assert resp.json()["data"]["status"] == "draft"

            resp = await alice.post(f"/api/rounds/{round_id}/advance")
            assert resp.status_code == 403

            resp = await owner.post(f"/api/rounds/{round_id}/advance")
            assert resp.json()["data"]["status"] == "submitting"

            active = (await bob.get("/api/rounds/active", params={"league_id": league_id})).json()
            assert active["data"]["id"] == round_id

            # Submissions
            subs = {}
            for user_id, client in (("owner", owner), ("alice", alice), ("bob", bob)):
                resp = await client.post(
                    "/api/submissions",
                    json={
                        "round_id": round_id,
                        "track_name": f"{user_id} rain song",
                        "artist": "Artist",
                        "genres": ["Indie"],
                    },
                )
                assert resp.status_code == 200
                subs[user_id] = resp.json()["data"]["id"]

            visible = (await alice.get("/api/submissions", params={"round_id": round_id})).json()
            assert [s["id"] for s in visible["data"]] == [subs["alice"]]

            # Voting
            resp = await owner.post(f"/api/rounds/{round_id}/advance")
            assert resp.json()["data"]["status"] == "voting"

            resp = await alice.post(
                "/api/votes",
                json={"round_id": round_id, "votes": [{"submission_id": subs["alice"], "points": 3}]},
            )
            assert resp.status_code == 400
            assert resp.json()["error"]["code"] == "failed_precondition"

            ballots = {
                owner: [{"submission_id": subs["bob"], "points": 3}],
                alice: [
                    {"submission_id": subs["bob"], "points": 2},
                    {"submission_id": subs["owner"], "points": 1},
                ],
                bob: [{"submission_id": subs["alice"], "points": 3}],
            }
            for client, votes in ballots.items():
                resp = await client.post("/api/votes", json={"round_id": round_id, "votes": votes})
                assert resp.status_code == 200

            mine = (await alice.get("/api/votes/mine", params={"round_id": round_id})).json()
            assert len(mine["data"]) == 2

            resp = await bob.get("/api/votes", params={"round_id": round_id})
            assert resp.status_code == 400

            resp = await bob.get(f"/api/stats/rounds/{round_id}")
            assert resp.status_code == 400

            # Reveal
            resp = await owner.post(f"/api/rounds/{round_id}/advance")
            assert resp.json()["data"]["status"] == "revealed"
            assert resp.json()["data"]["revealed_at"] is not None

            results = (await bob.get(f"/api/stats/rounds/{round_id}")).json()["data"]
            assert [(r["user_id"], r["score"], r["placement"]) for r in results] == [
                ("bob", 5, 1),
                ("alice", 3, 2),
                ("owner", 1, 3),
            ]

            all_votes = (await bob.get("/api/votes", params={"round_id": round_id})).json()
            assert len(all_votes["data"]) == 4

            board = (
                await alice.get("/api/stats/leaderboard", params={"league_id": league_id})
            ).json()["data"]
            assert [(e["user_id"], e["total_points"], e["rank"]) for e in board] == [
                ("bob", 5, 1),
                ("alice", 3, 2),
                ("owner", 1, 3),
            ]

            stats = (
                await alice.get("/api/stats/members/bob", params={"league_id": league_id})
            ).json()["data"]
            assert stats["wins"] == 1
            assert stats["favorite_genres"] == [{"genre": "indie", "count": 1}]
            assert stats["submission_history"][0]["round_id"] == round_id

            compare = (
                await alice.get(
                    "/api/stats/compare",
                    params={"league_id": league_id, "user1": "bob", "user2": "alice"},
                )
            ).json()["data"]
            assert compare["head_to_head"]["user1_wins"] == 1

            summary = (
                await owner.get("/api/stats/summary", params={"league_id": league_id})
            ).json()["data"]
            assert summary["total_rounds"] == 1
            assert summary["total_votes_cast"] == 4

            artists = (
                await alice.get("/api/stats/top-artists", params={"league_id": league_id})
            ).json()["data"]
            assert artists == [{"artist": "Artist", "submission_count": 3}]

            songs = (
                await alice.get("/api/stats/top-songs", params={"league_id": league_id})
            ).json()["data"]
            assert songs == []

            hits = (
                await bob.get(
                    "/api/stats/search", params={"league_id": league_id, "q": "ALICE rain"}
                )
            ).json()["data"]
            assert [h["submission_id"] for h in hits] == [subs["alice"]]

            # Discussion after reveal
            resp = await alice.post(
                "/api/reactions", json={"submission_id": subs["bob"], "emoji": "🔥"}
            )
            assert resp.json()["data"]["added"] is True
            resp = await bob.post(
                "/api/comments", json={"submission_id": subs["bob"], "content": "  thanks!  "}
            )
            assert resp.json()["data"]["content"] == "thanks!"

            # Archive
            resp = await owner.post(f"/api/rounds/{round_id}/advance")
            assert resp.json()["data"]["status"] == "archived"
            resp = await owner.post(f"/api/rounds/{round_id}/advance")
            assert resp.status_code == 400


class TestModerationFlow:
    async def test_ban_blocks_rejoin(self, client_as: ClientFactory):
        async with client_as("owner") as owner, client_as("dave") as dave:
            league_id = (await owner.post("/api/leagues", json={"name": "Strict"})).json()[
                "data"
            ]["id"]
            code = (await owner.post("/api/invites", json={"league_id": league_id})).json()[
                "data"
            ]["code"]
            await dave.post("/api/invites/redeem", json={"code": code})

            resp = await owner.post(
                f"/api/leagues/{league_id}/members/dave/ban", json={"reason": "spam"}
            )
            assert resp.status_code == 200
            assert resp.json()["data"]["action"] == "ban"

            resp = await dave.post("/api/invites/redeem", json={"code": code})
            assert resp.status_code == 403

            log = (await owner.get(f"/api/leagues/{league_id}/moderation-log")).json()
            assert [e["action"] for e in log["data"]] == ["ban"]
            assert log["data"][0]["reason"] == "spam"


class TestSeasonRoutes:
    async def test_season_crud(self, client_as: ClientFactory):
        async with client_as("owner") as owner:
            league_id = (await owner.post("/api/leagues", json={"name": "Seasons"})).json()[
                "data"
            ]["id"]
            season = (
                await owner.post("/api/seasons", json={"league_id": league_id, "name": "Spring"})
            ).json()["data"]

            resp = await owner.patch(f"/api/seasons/{season['id']}", json={"name": "Spring '26"})
            assert resp.json()["data"]["name"] == "Spring '26"

            detail = (await owner.get(f"/api/seasons/{season['id']}")).json()["data"]
            assert detail["round_count"] == 0
            assert detail["status"] == "upcoming"

            resp = await owner.delete(f"/api/seasons/{season['id']}")
            assert resp.json() == {"data": {"id": season["id"], "deleted": True}}

            resp = await owner.get(f"/api/seasons/{season['id']}")
            assert resp.status_code == 404
