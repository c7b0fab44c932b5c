import logging
from typing import List, Optional, Sequence, Tuple, Union

from curator.domain.entities import PLAYBACK_ACTIONS, PlaybackCommand, PlaybackDecision, PlaybackState
from curator.domain.errors import ValidationError
from curator.domain.normalization import is_valid_uri


logger = logging.getLogger(__name__)

RESTART_THRESHOLD_MS = 3000
END_SEEK_OFFSET_MS = 5000

_PAUSE_WORDS = ("pause", "stop")
_NEXT_WORDS = ("next", "skip")
_PREVIOUS_WORDS = ("previous", "back", "last")


def validate_playback_command(command: PlaybackCommand) -> None:
    errors: List[str] = []

    if command.action not in PLAYBACK_ACTIONS:
        errors.append(f"Invalid action: {command.action}")
    if command.context_uri is not None and not is_valid_uri(command.context_uri):
        errors.append(f"Invalid context URI: {command.context_uri}")
    if command.track_uri is not None and not is_valid_uri(command.track_uri):
        errors.append(f"Invalid track URI: {command.track_uri}")
    if command.position_ms is not None and command.position_ms < 0:
        errors.append("Position cannot be negative")

    if errors:
        raise ValidationError(
            f"Invalid playback command: {'; '.join(errors)}",
            {"violations": errors, "command": command.to_json()},
        )


def _decide_play(state: PlaybackState, context_uri: Optional[str], track_uri: Optional[str],
                 position_ms: Optional[int]) -> PlaybackDecision:
    if state.is_playing:
        if context_uri and state.context and state.context.uri == context_uri:
            return PlaybackDecision(should_execute=False, reason="Already playing requested context")

        if track_uri and state.current_track and state.current_track.uri == track_uri:
            if position_ms is not None and position_ms != state.progress_ms:
                return PlaybackDecision(
                    should_execute=True,
                    command=PlaybackCommand(action="play", track_uri=track_uri, position_ms=position_ms),
                )
            return PlaybackDecision(should_execute=False, reason="Already playing requested track")

        if not context_uri and not track_uri:
            return PlaybackDecision(should_execute=False, reason="Already playing")

    return PlaybackDecision(
        should_execute=True,
        command=PlaybackCommand(
            action="play",
            context_uri=context_uri,
            track_uri=track_uri,
            position_ms=position_ms,
        ),
    )


def make_playback_decision(state: PlaybackState, action: str, context_uri: Optional[str] = None,
                           track_uri: Optional[str] = None,
                           position_ms: Optional[int] = None) -> PlaybackDecision:
    """Map a playback snapshot and requested action to a command or a no-op.

    Input is validated before the state is inspected.
    """
    validate_playback_command(PlaybackCommand(
        action=action,
        context_uri=context_uri,
        track_uri=track_uri,
        position_ms=position_ms,
    ))

    if action == "play":
        decision = _decide_play(state, context_uri, track_uri, position_ms)
    elif action == "pause":
        if not state.is_playing:
            decision = PlaybackDecision(should_execute=False, reason="Already paused")
        else:
            decision = PlaybackDecision(should_execute=True, command=PlaybackCommand(action="pause"))
    elif action == "next":
        decision = PlaybackDecision(should_execute=True, command=PlaybackCommand(action="next"))
    else:
        if state.progress_ms and state.progress_ms > RESTART_THRESHOLD_MS:
            decision = PlaybackDecision(
                should_execute=True,
                command=PlaybackCommand(
                    action="play",
                    track_uri=state.current_track.uri if state.current_track else None,
                    position_ms=0,
                ),
            )
        else:
            decision = PlaybackDecision(should_execute=True, command=PlaybackCommand(action="previous"))

    logger.debug(f"Playback {action}: execute={decision.should_execute} reason={decision.reason}")
    return decision


def resolve_playback_intent(text: str, state: PlaybackState,
                            available_tracks: Optional[Sequence[Tuple[str, str]]] = None) -> PlaybackDecision:
    """Resolve a short spoken-style command to a decision.

    ``available_tracks`` is a sequence of ``(uri, name)`` pairs that a
    "play <name>" request may refer to.
    """
    lower = text.lower().strip()
    words = lower.split()

    if any(w in lower for w in _PAUSE_WORDS):
        return make_playback_decision(state, "pause")
    if any(w in lower for w in _NEXT_WORDS):
        return make_playback_decision(state, "next")
    if any(w in lower for w in _PREVIOUS_WORDS):
        return make_playback_decision(state, "previous")

    if "play" in lower:
        for uri, name in available_tracks or ():
            if name.lower() in lower:
                return make_playback_decision(state, "play", track_uri=uri)
        return make_playback_decision(state, "play")

    if "song" in lower or "track" in lower:
        for uri, name in available_tracks or ():
            name_words = name.lower().split()
            if any(word in name_word for word in words for name_word in name_words):
                return make_playback_decision(state, "play", track_uri=uri)

    return PlaybackDecision(should_execute=False, reason=f'Could not resolve intent: "{text}"')


def calculate_seek_position(duration_ms: int, target: Union[str, int]) -> int:
    if target == "beginning":
        return 0
    if target == "end":
        return max(0, duration_ms - END_SEEK_OFFSET_MS)
    if target == "middle":
        return duration_ms // 2
    if isinstance(target, int) and not isinstance(target, bool):
        return max(0, min(target, duration_ms))
    return 0
