"""
Message router — turns one inbound frame into session mutations and events.

Flow per frame:
  1. Decode JSON and validate against the model for its ``type``
     (INVALID_FORMAT / UNKNOWN_MESSAGE_TYPE go back to the sender only)
  2. Authorize: host-only types need the channel currently bound as host
     for the game; player actions need the channel bound as that player
  3. Mutate the GameSession synchronously and queue outbound events
  4. Flush events through the ConnectionManager
  5. Fire-and-forget a store write for every session that changed

Nothing awaits between the start of a mutation and its end, so frames
from many channels interleave safely on one event loop. The only awaits
before a mutation are store reads when a game is not resident.
"""
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from models.game import (
    BUZZ_ACCEPTED,
    BUZZ_TEAM_LOCKED,
    GameError,
    GameNotFoundError,
    GameSession,
    InvalidFormatError,
    UnauthorizedError,
    UnknownMessageTypeError,
)
from models.protocol import (
    INBOUND_MODELS,
    CreateGameMessage,
    Envelope,
    ErrorCode,
    EventType,
    GameMessage,
    GameStartedMessage,
    JoinGameMessage,
    ManagerChangedMessage,
    MessageType,
    PlayerMessage,
    RevealFinalScoresMessage,
    RoundUpdateMessage,
    ScoreUpdatedMessage,
    SubmitScoreMessage,
    error_event,
)
from services.connection_manager import Binding, ConnectionManager, Role
from services.context import GameContext

logger = logging.getLogger(__name__)


def decode_message(data: Any) -> Tuple[MessageType, Envelope]:
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise InvalidFormatError("Invalid message format")
    try:
        msg_type = MessageType(data["type"])
    except ValueError:
        raise UnknownMessageTypeError(f"Unknown message type: '{data['type']}'")
    try:
        payload = INBOUND_MODELS[msg_type].model_validate(data)
    except ValidationError as exc:
        raise InvalidFormatError(f"Invalid {msg_type.value} payload: {exc.error_count()} error(s)")
    return msg_type, payload


class Outbox:
    """Events and dirty sessions collected while one frame is handled."""

    def __init__(self, connections: ConnectionManager):
        self._connections = connections
        self.messages: List[Tuple[str, Dict[str, Any]]] = []
        self.dirty: Dict[str, GameSession] = {}

    def send(self, conn_id: Optional[str], message: Dict[str, Any]) -> None:
        if conn_id:
            self.messages.append((conn_id, message))

    def to_host(self, game_code: str, message: Dict[str, Any]) -> None:
        self.send(self._connections.find_host(game_code), message)

    def broadcast(
        self, game_code: str, message: Dict[str, Any], exclude: Optional[str] = None
    ) -> None:
        for conn_id in self._connections.select(game_code, exclude=exclude):
            self.send(conn_id, message)

    def team_channels(
        self, game_code: str, team_name: str, exclude_player: Optional[str] = None
    ) -> List[Tuple[str, Binding]]:
        result = []
        for conn_id in self._connections.select(game_code, role=Role.PLAYER, team_name=team_name):
            binding = self._connections.binding(conn_id)
            if binding and binding.player_id != exclude_player:
                result.append((conn_id, binding))
        return result

    def to_team(self, game_code: str, team_name: str, message: Dict[str, Any]) -> None:
        for conn_id, _ in self.team_channels(game_code, team_name):
            self.send(conn_id, message)

    def persist(self, session: GameSession) -> None:
        self.dirty[session.code] = session


Handler = Callable[[str, Any, Outbox], Awaitable[None]]


class MessageRouter:
    def __init__(self, context: GameContext):
        self.ctx = context
        self._handlers: Dict[MessageType, Handler] = {
            MessageType.CREATE_GAME: self._on_create_game,
            MessageType.JOIN_GAME: self._on_join_game,
            MessageType.REJOIN_GAME: self._on_join_game,
            MessageType.GAME_STARTED: self._on_game_started,
            MessageType.ROUND_UPDATE: self._on_round_update,
            MessageType.PLAYER_BUZZ: self._on_player_buzz,
            MessageType.CLEAR_BUZZERS: self._on_clear_buzzers,
            MessageType.CLEAR_PLAYER_BUZZ: self._on_clear_player_buzz,
            MessageType.CLEAR_LAST_BUZZ: self._on_clear_last_buzz,
            MessageType.ENABLE_SCORING: self._on_enable_scoring,
            MessageType.SUBMIT_SCORE: self._on_submit_score,
            MessageType.MANAGER_CHANGED: self._on_manager_changed,
            MessageType.SCORE_UPDATED: self._on_score_updated,
            MessageType.REVEAL_FINAL_SCORES: self._on_reveal_final_scores,
            MessageType.LEAVE_GAME: self._on_leave_game,
            MessageType.PLAYER_DISCONNECT: self._on_player_disconnect,
            MessageType.GET_TEAMS: self._on_get_teams,
        }

    @property
    def connections(self) -> ConnectionManager:
        return self.ctx.connections

    # ── Entry points ───────────────────────────────────────────────────────────

    async def handle_raw(self, conn_id: str, raw: Union[str, bytes, None]) -> None:
        try:
            data = json.loads(raw)
        except (ValueError, TypeError):
            # ValueError covers bad JSON and bytes that are not UTF-8
            await self.connections.send(
                conn_id, error_event(ErrorCode.INVALID_FORMAT, "Invalid message format")
            )
            return
        await self.handle_message(conn_id, data)

    async def handle_message(self, conn_id: str, data: Any) -> None:
        outbox = Outbox(self.connections)
        try:
            msg_type, payload = decode_message(data)
            logger.debug("Routing %s from %s", msg_type.value, conn_id)
            await self._handlers[msg_type](conn_id, payload, outbox)
        except GameError as exc:
            outbox.send(conn_id, error_event(exc.code, exc.message))
        except Exception:
            logger.exception("Unhandled error routing message from %s", conn_id)
            outbox.send(conn_id, error_event(ErrorCode.SERVER_ERROR, "Internal server error"))
        await self._flush(outbox)

    async def handle_disconnect(self, conn_id: str) -> None:
        """Channel closed or errored: forget it and clean up its binding."""
        outbox = Outbox(self.connections)
        binding = self.connections.drop(conn_id)
        self._release(binding, outbox)
        await self._flush(outbox)

    async def _flush(self, outbox: Outbox) -> None:
        for conn_id, message in outbox.messages:
            await self.connections.send(conn_id, message)
        for session in outbox.dirty.values():
            self.ctx.persistence.schedule_save(session)

    # ── Guards ─────────────────────────────────────────────────────────────────

    def _host_session(self, conn_id: str, game_code: str) -> GameSession:
        if not self.connections.is_host(conn_id, game_code):
            raise UnauthorizedError("Only the host can do that")
        session = self.ctx.registry.get(game_code)
        if session is None:
            raise GameNotFoundError("Game not found")
        return session

    def _resident_session(self, game_code: str) -> GameSession:
        session = self.ctx.registry.get(game_code)
        if session is None:
            raise GameNotFoundError("Game not found")
        return session

    async def _resolve_session(self, game_code: str) -> GameSession:
        """Resident game, else restore it from the store."""
        session = self.ctx.registry.get(game_code)
        if session is not None:
            return session
        loaded = await self.ctx.persistence.load(game_code)
        # Another frame may have restored it while we were reading
        session = self.ctx.registry.get(game_code)
        if session is not None:
            return session
        if loaded is None:
            raise GameNotFoundError("Game not found")
        self.ctx.registry.put(game_code, loaded)
        logger.info("[%s] Game loaded from store", game_code)
        return loaded

    def _require_player(
        self, conn_id: str, game_code: str, player_id: str, allow_host: bool = False
    ) -> None:
        binding = self.connections.binding(conn_id)
        if binding is not None and binding.game_code == game_code:
            if binding.role == Role.PLAYER and binding.player_id == player_id:
                return
            if allow_host and binding.role == Role.HOST:
                return
        raise UnauthorizedError("This connection cannot act for that player")

    # ── Disconnect cleanup ─────────────────────────────────────────────────────

    def _release(self, binding: Optional[Binding], outbox: Outbox) -> None:
        if binding is None:
            return
        code = binding.game_code
        session = self.ctx.registry.get(code)
        if session is None:
            return

        if binding.role == Role.HOST:
            outbox.broadcast(code, {"type": EventType.HOST_DISCONNECTED.value})
            self.ctx.registry.schedule_eviction(code, self.ctx.host_abandon_delay_sec)
            logger.info("[%s] Host disconnected", code)
            return

        player_id = binding.player_id
        if player_id is None or self.connections.find_player(code, player_id):
            # Already back on a newer channel
            return
        session.clear_buzz_for(player_id)
        session.set_connected(player_id, False)
        outbox.to_host(code, {
            "type": EventType.PLAYER_DISCONNECTED.value,
            "playerId": player_id,
        })
        outbox.persist(session)
        logger.info("[%s] Player %s disconnected", code, player_id)

    def _leave_prior_binding(
        self,
        conn_id: str,
        role: Role,
        game_code: str,
        player_id: Optional[str],
        outbox: Outbox,
    ) -> None:
        """A channel taking a different seat first gives up the one it held."""
        prior = self.connections.binding(conn_id)
        if prior is None:
            return
        if (prior.game_code, prior.role, prior.player_id) == (game_code, role, player_id):
            return
        self._release(self.connections.unbind(conn_id), outbox)

    # ── Handlers ───────────────────────────────────────────────────────────────

    async def _on_create_game(self, conn_id: str, msg: CreateGameMessage, out: Outbox) -> None:
        registry = self.ctx.registry
        code = msg.game_code
        session: Optional[GameSession] = None

        if code:
            session = registry.get(code)
            if session is None:
                loaded = await self.ctx.persistence.load(code)
                session = registry.get(code)
                if session is None:
                    session = loaded
        else:
            code = registry.new_code()

        restored = session is not None
        if session is None:
            session = GameSession(code=code, host_id=msg.host_id)
        elif session.host_id is None:
            session.host_id = msg.host_id
        elif self.ctx.require_host_id and msg.host_id != session.host_id:
            raise UnauthorizedError("Host credentials do not match this game")

        registry.put(code, session)
        registry.cancel_eviction(code)

        previous = self.connections.find_host(code)
        if previous and previous != conn_id:
            # Superseded host channel loses its authority
            self.connections.unbind(previous)
        self._leave_prior_binding(conn_id, Role.HOST, code, None, out)
        self.connections.bind(conn_id, Role.HOST, code)

        reply: Dict[str, Any] = {
            "type": EventType.GAME_CREATED.value,
            "gameCode": code,
            "restored": restored,
        }
        if restored:
            reply["gameState"] = session.snapshot()
        out.send(conn_id, reply)
        out.persist(session)
        logger.info("[%s] Game %s", code, "restored" if restored else "created")

    async def _on_join_game(self, conn_id: str, msg: JoinGameMessage, out: Outbox) -> None:
        session = await self._resolve_session(msg.game_code)
        code = session.code

        session.add_player(msg.player_id, msg.player_name, msg.team_name, msg.is_manager)
        self._leave_prior_binding(conn_id, Role.PLAYER, code, msg.player_id, out)
        self.connections.bind(conn_id, Role.PLAYER, code, msg.player_id, msg.team_name)

        team = session.teams[msg.team_name]
        member = team.member(msg.player_id)
        out.send(conn_id, {
            "type": EventType.GAME_JOINED.value,
            **session.snapshot(),
            "playerId": msg.player_id,
            "teamName": msg.team_name,
            "restored": True,
        })
        out.to_host(code, {
            "type": EventType.PLAYER_JOINED.value,
            "playerId": msg.player_id,
            "playerName": msg.player_name,
            "teamName": msg.team_name,
            "isManager": bool(member and member.is_manager),
            "teams": session.teams_data(),
        })
        out.persist(session)
        logger.info(
            "[%s] Player %s joined team %s", code, msg.player_name, msg.team_name
        )

    async def _on_game_started(self, conn_id: str, msg: GameStartedMessage, out: Outbox) -> None:
        session = self._host_session(conn_id, msg.game_code)
        session.start(msg.games, msg.current_game, msg.current_round)
        out.broadcast(session.code, {
            "type": EventType.GAME_STARTED.value,
            "games": [list(g) for g in session.games],
            "currentGame": session.current_game,
            "currentRound": session.current_round,
        }, exclude=conn_id)
        out.persist(session)
        logger.info("[%s] Game started", session.code)

    async def _on_round_update(self, conn_id: str, msg: RoundUpdateMessage, out: Outbox) -> None:
        session = self._host_session(conn_id, msg.game_code)
        session.advance(msg.current_game, msg.current_round)
        out.broadcast(session.code, {
            "type": EventType.ROUND_UPDATE.value,
            "currentGame": session.current_game,
            "currentRound": session.current_round,
        }, exclude=conn_id)
        out.persist(session)
        logger.info(
            "[%s] Now at game %d, round %d",
            session.code, session.current_game, session.current_round,
        )

    async def _on_player_buzz(self, conn_id: str, msg: PlayerMessage, out: Outbox) -> None:
        session = self._resident_session(msg.game_code)
        self._require_player(conn_id, msg.game_code, msg.player_id)

        accepted = session.buzz(msg.player_id)
        out.send(conn_id, {
            "type": EventType.BUZZ_RESPONSE.value,
            "playerId": msg.player_id,
            "success": accepted,
            "reason": BUZZ_ACCEPTED if accepted else session.buzz_block_reason(msg.player_id),
        })
        if not accepted:
            return

        record = session.buzz_queue[-1]
        out.to_host(session.code, {
            "type": EventType.PLAYER_BUZZED.value,
            "playerId": record.player_id,
            "playerName": record.player_name,
            "teamName": record.team_name,
            "timestamp": record.timestamp,
        })
        for other, binding in out.team_channels(session.code, record.team_name, exclude_player=msg.player_id):
            out.send(other, {
                "type": EventType.BUZZ_RESPONSE.value,
                "playerId": binding.player_id,
                "success": False,
                "reason": BUZZ_TEAM_LOCKED,
            })
        out.persist(session)

    async def _on_clear_buzzers(self, conn_id: str, msg: GameMessage, out: Outbox) -> None:
        session = self._host_session(conn_id, msg.game_code)
        session.clear_all_buzzes()
        out.broadcast(session.code, {"type": EventType.CLEAR_BUZZERS.value}, exclude=conn_id)
        out.persist(session)
        logger.info("[%s] Buzzers cleared", session.code)

    async def _on_clear_player_buzz(self, conn_id: str, msg: PlayerMessage, out: Outbox) -> None:
        session = self._host_session(conn_id, msg.game_code)
        team_name = session.clear_buzz_for(msg.player_id)
        if team_name is None:
            return
        out.to_team(session.code, team_name, {
            "type": EventType.CLEAR_BUZZERS.value,
            "teamName": team_name,
        })
        out.persist(session)
        logger.info("[%s] Cleared buzz for player %s", session.code, msg.player_id)

    async def _on_clear_last_buzz(self, conn_id: str, msg: GameMessage, out: Outbox) -> None:
        session = self._host_session(conn_id, msg.game_code)
        record = session.pop_last_buzz()
        if record is None:
            return
        out.to_team(session.code, record.team_name, {
            "type": EventType.CLEAR_BUZZERS.value,
            "teamName": record.team_name,
        })
        out.persist(session)
        logger.info("[%s] Undid last buzz (%s)", session.code, record.player_id)

    async def _on_enable_scoring(self, conn_id: str, msg: GameMessage, out: Outbox) -> None:
        session = self._host_session(conn_id, msg.game_code)
        session.scoring_enabled = True
        out.broadcast(session.code, {"type": EventType.ENABLE_SCORING.value}, exclude=conn_id)
        out.persist(session)

    async def _on_submit_score(self, conn_id: str, msg: SubmitScoreMessage, out: Outbox) -> None:
        session = self._resident_session(msg.game_code)
        self._require_player(conn_id, msg.game_code, msg.player_id, allow_host=True)

        result = session.submit_score(
            msg.player_id, msg.team_name, msg.game, msg.round, msg.score
        )
        team = session.teams[msg.team_name]
        out.to_host(session.code, {
            "type": EventType.SCORE_SUBMITTED.value,
            "teamName": msg.team_name,
            "score": msg.score,
            "roundIndex": result.round_index,
            "totalScore": result.total_score,
            "roundScores": list(team.round_scores),
        })
        out.send(conn_id, {
            "type": EventType.SCORE_CONFIRMED.value,
            "score": msg.score,
            "roundIndex": result.round_index,
            "totalScore": result.total_score,
        })
        out.persist(session)
        logger.info(
            "[%s] Score submitted: %s - %d points (round %d)",
            session.code, msg.team_name, msg.score, result.round_index + 1,
        )

    async def _on_manager_changed(self, conn_id: str, msg: ManagerChangedMessage, out: Outbox) -> None:
        session = self._host_session(conn_id, msg.game_code)
        if not session.set_manager(msg.team_name, msg.new_manager_id):
            return
        out.broadcast(session.code, {
            "type": EventType.MANAGER_CHANGED.value,
            "teamName": msg.team_name,
            "newManagerId": msg.new_manager_id,
        }, exclude=conn_id)
        out.persist(session)
        logger.info("[%s] Manager changed for team %s", session.code, msg.team_name)

    async def _on_score_updated(self, conn_id: str, msg: ScoreUpdatedMessage, out: Outbox) -> None:
        session = self._host_session(conn_id, msg.game_code)
        if not session.set_scores(msg.team_name, msg.scores, msg.total_score):
            return
        out.to_team(session.code, msg.team_name, {
            "type": EventType.SCORE_UPDATED.value,
            "teamName": msg.team_name,
            "roundScores": list(msg.scores),
            "totalScore": msg.total_score,
        })
        out.persist(session)

    async def _on_reveal_final_scores(
        self, conn_id: str, msg: RevealFinalScoresMessage, out: Outbox
    ) -> None:
        session = self._host_session(conn_id, msg.game_code)
        session.ended = True
        out.broadcast(session.code, {
            "type": EventType.REVEAL_FINAL_SCORES.value,
            "standings": msg.standings,
        }, exclude=conn_id)
        out.persist(session)
        logger.info("[%s] Final scores revealed", session.code)

    async def _on_leave_game(self, conn_id: str, msg: PlayerMessage, out: Outbox) -> None:
        self._require_player(conn_id, msg.game_code, msg.player_id)
        try:
            session = await self._resolve_session(msg.game_code)
        except GameNotFoundError:
            session = None

        if session is not None:
            session.remove_player(msg.player_id)
            out.to_host(session.code, {
                "type": EventType.PLAYER_LEFT.value,
                "playerId": msg.player_id,
                "teams": session.teams_data(),
            })
            out.persist(session)

        self.connections.unbind(conn_id)
        logger.info("[%s] Player %s left", msg.game_code, msg.player_id)

    async def _on_player_disconnect(self, conn_id: str, msg: Envelope, out: Outbox) -> None:
        self._release(self.connections.unbind(conn_id), out)

    async def _on_get_teams(self, conn_id: str, msg: GameMessage, out: Outbox) -> None:
        session = await self._resolve_session(msg.game_code)
        out.send(conn_id, {
            "type": EventType.TEAMS_LIST.value,
            "teams": session.team_counts(),
        })
