"""Stub coordinator, fake Socket.IO client and other test doubles."""

import copy
from collections import Counter
from concurrent.futures import Executor, Future
from typing import Any, Dict, List, Optional

import socketio
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from jose import jwt

SECRET = "test-secret"


def make_token(role: str = "team", team_id: Optional[str] = "t1", team_name: Optional[str] = "Alpha", **extra) -> str:
    claims: Dict[str, Any] = {"role": role}
    if team_id:
        claims["teamId"] = team_id
    if team_name:
        claims["teamName"] = team_name
    claims.update(extra)
    return jwt.encode(claims, SECRET, algorithm="HS256")


# ─────────────────────────────────────────────
# STUB COORDINATOR
# ─────────────────────────────────────────────

class Coordinator:
    """
    In-memory stand-in for the coordinator's REST surface.
    Tests mutate `round`/`leaderboard` directly and read `calls`.
    """

    def __init__(self):
        self.round: Optional[Dict[str, Any]] = None
        self.leaderboard: List[Dict[str, Any]] = [
            {"teamId": "t1", "teamName": "Alpha", "coins": 2000, "correctAnswers": 0, "wrongAnswers": 0},
            {"teamId": "t2", "teamName": "Beta", "coins": 2000, "correctAnswers": 0, "wrongAnswers": 0},
            {"teamId": "t3", "teamName": "Gamma", "coins": 2000, "correctAnswers": 0, "wrongAnswers": 0},
        ]
        self.seq: Optional[int] = None
        self.round_counter = 0
        self.history: List[Dict[str, Any]] = []
        self.calls: Counter = Counter()
        # status codes to return instead of the normal answer, consumed in order
        self.state_failures: List[int] = []
        self.bid_failures: List[JSONResponse] = []

    def claims(self, request: Request) -> Optional[Dict[str, Any]]:
        auth = request.headers.get("authorization", "")
        if not auth.startswith("Bearer "):
            return None
        token = auth[len("Bearer "):]
        if token == "spectator":
            return {"role": "spectator"}
        try:
            return jwt.decode(token, SECRET, algorithms=["HS256"])
        except Exception:
            return None

    def team_row(self, team_id: str) -> Optional[Dict[str, Any]]:
        for row in self.leaderboard:
            if row["teamId"] == team_id:
                return row
        return None


def build_coordinator_app(coord: Coordinator) -> FastAPI:
    app = FastAPI()

    def deny(status: int = 401, message: str = "Invalid token"):
        return JSONResponse(status_code=status, content={"message": message})

    @app.get("/api/game/state")
    def game_state(request: Request):
        coord.calls["state"] += 1
        if coord.state_failures:
            return JSONResponse(status_code=coord.state_failures.pop(0), content={"message": "forced"})
        claims = coord.claims(request)
        if claims is None:
            return deny()
        body: Dict[str, Any] = {"round": copy.deepcopy(coord.round), "leaderboard": copy.deepcopy(coord.leaderboard)}
        if claims.get("role") == "team":
            body["team"] = copy.deepcopy(coord.team_row(claims.get("teamId")))
            if body["round"]:
                body["round"]["bids"] = [b for b in body["round"].get("bids", []) if b["teamId"] == claims["teamId"]]
        if coord.seq is not None:
            body["seq"] = coord.seq
        return body

    @app.post("/api/game/bid")
    async def bid(request: Request):
        coord.calls["bid"] += 1
        claims = coord.claims(request)
        if claims is None:
            return deny()
        if claims.get("role") != "team":
            return deny(403, "Teams only")
        if coord.bid_failures:
            return coord.bid_failures.pop(0)
        data = await request.json()
        rnd = coord.round
        if not rnd or rnd.get("status") != "bidding":
            return JSONResponse(status_code=400, content={"message": "No active round"})
        bids = rnd.setdefault("bids", [])
        if any(b["teamId"] == claims["teamId"] for b in bids):
            return JSONResponse(status_code=400, content={"message": "Team has already bid this round"})
        bids.append({"teamId": claims["teamId"], "teamName": claims.get("teamName"), "amount": data["amount"]})
        return {"message": "Bid placed"}

    def admin_only(request: Request):
        claims = coord.claims(request)
        if claims is None:
            return deny()
        if claims.get("role") != "admin":
            return deny(403, "Admin only")
        return None

    @app.post("/api/game/start")
    async def start(request: Request):
        coord.calls["start"] += 1
        denied = admin_only(request)
        if denied:
            return denied
        data = await request.json()
        coord.round_counter += 1
        coord.round = {
            "roundNumber": coord.round_counter,
            "title": data["title"],
            "category": data.get("category", ""),
            "status": "bidding",
            "timeLeft": data.get("duration", 30),
            "bids": [],
        }
        return {"message": "Round started", "roundNumber": coord.round_counter}

    @app.post("/api/game/end-bidding")
    def end_bidding(request: Request):
        coord.calls["end-bidding"] += 1
        denied = admin_only(request)
        if denied:
            return denied
        if not coord.round or coord.round["status"] != "bidding":
            return JSONResponse(status_code=400, content={"message": "Round not active"})
        coord.round["status"] = "reviewing"
        return {"message": "Bidding ended"}

    @app.post("/api/game/result")
    async def result(request: Request):
        coord.calls["result"] += 1
        denied = admin_only(request)
        if denied:
            return denied
        data = await request.json()
        coord.history.append({"roundNumber": coord.round_counter, "result": data["result"]})
        coord.round = None
        return {"message": "Result recorded"}

    @app.post("/api/game/force-reset")
    def force_reset(request: Request):
        coord.calls["force-reset"] += 1
        denied = admin_only(request)
        if denied:
            return denied
        coord.round = None
        return {"message": "Round reset"}

    @app.post("/api/teams/reset")
    def teams_reset(request: Request):
        coord.calls["teams-reset"] += 1
        denied = admin_only(request)
        if denied:
            return denied
        for row in coord.leaderboard:
            row.update({"coins": 2000, "correctAnswers": 0, "wrongAnswers": 0})
        coord.round = None
        coord.round_counter = 0
        return {"message": "Game reset"}

    @app.get("/api/game/history")
    def history(request: Request):
        coord.calls["history"] += 1
        denied = admin_only(request)
        if denied:
            return denied
        return {"history": coord.history}

    return app


# ─────────────────────────────────────────────
# FAKE SOCKET.IO CLIENT
# ─────────────────────────────────────────────

class FakeSocketClient:
    def __init__(self, fail: bool = False):
        self.handlers: Dict[str, Any] = {}
        self.connected = False
        self.fail = fail
        self.connect_kwargs: Optional[Dict[str, Any]] = None
        self.disconnects = 0

    def on(self, event, handler=None):
        self.handlers[event] = handler

    def connect(self, url, **kwargs):
        self.connect_kwargs = dict(kwargs, url=url)
        if self.fail:
            raise socketio.exceptions.ConnectionError("Connection refused by the server")
        self.connected = True

    def disconnect(self):
        self.disconnects += 1
        self.connected = False

    # server side
    def push(self, event: str, payload: Any = None):
        handler = self.handlers.get(event)
        if handler is None:
            self.handlers["*"](event, payload)
        elif payload is None:
            handler()
        else:
            handler(payload)

    def drop(self):
        self.connected = False
        self.handlers["disconnect"]("transport close")


class SocketFactory:
    def __init__(self):
        self.clients: List[FakeSocketClient] = []
        self.failures = 0

    def __call__(self) -> FakeSocketClient:
        fail = self.failures > 0
        if fail:
            self.failures -= 1
        client = FakeSocketClient(fail=fail)
        self.clients.append(client)
        return client

    @property
    def last(self) -> FakeSocketClient:
        return self.clients[-1]


# ─────────────────────────────────────────────
# CLOCK / EXECUTOR
# ─────────────────────────────────────────────

class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InlineExecutor(Executor):
    def __init__(self):
        self.submitted = 0

    def submit(self, fn, *args, **kwargs):
        self.submitted += 1
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class DeferredExecutor(Executor):
    """Holds submitted work until run_pending(), so fetches land after pushed events."""

    def __init__(self):
        self.pending: List[Any] = []

    def submit(self, fn, *args, **kwargs):
        future: Future = Future()
        self.pending.append((future, fn, args, kwargs))
        return future

    def run_pending(self) -> int:
        n = 0
        while self.pending:
            future, fn, args, kwargs = self.pending.pop(0)
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as e:
                future.set_exception(e)
            n += 1
        return n
