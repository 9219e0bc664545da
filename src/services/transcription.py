"""
Transcription Stage.

Turns the stored audio of a ``captured`` intake into a transcript and
advances the intake to ``transcribed``. Transcripts that are empty, or far
too short for the recording length, are rejected without touching the
intake so the user can simply record again.
"""

from __future__ import annotations

from src.db import DatabaseClient, get_db
from src.errors import (
    AssetUnavailable,
    EmptyTranscript,
    IntakeNotFound,
    InvalidState,
    SuspiciouslyShortTranscript,
)
from src.logging_config import bind_intake, get_logger
from src.schemas.intake import IntakeStatus, TranscribeResponse, VoiceIntake
from src.services.openai_client import SpeechToTextClient

logger = get_logger(__name__)

# Audio longer than this with fewer chars than the next constant is a capture failure
SHORT_AUDIO_SECONDS = 3
MIN_TRANSCRIPT_CHARS = 10
# Below this length on long audio we only warn ("No thanks, goodbye" is valid)
WARN_AUDIO_SECONDS = 10
WARN_TRANSCRIPT_CHARS = 30


def validate_transcript(text: str, duration_seconds: float, intake_id: str = "") -> list[str]:
    """
    Check a transcript against the recording length.

    Returns:
        Warning messages for suspicious-but-acceptable transcripts.

    Raises:
        EmptyTranscript: nothing was transcribed.
        SuspiciouslyShortTranscript: a few characters from several seconds of audio.
    """
    stripped = (text or "").strip()
    length = len(stripped)

    if length == 0:
        logger.error("transcript_empty", intake_id=intake_id, audio_duration=duration_seconds)
        raise EmptyTranscript("Transcription returned empty text. Audio may be silent or corrupted.")

    if duration_seconds > SHORT_AUDIO_SECONDS and length < MIN_TRANSCRIPT_CHARS:
        logger.error(
            "transcript_too_short",
            intake_id=intake_id,
            transcript_length=length,
            audio_duration=duration_seconds,
            transcript_preview=stripped,
        )
        raise SuspiciouslyShortTranscript(
            f'Transcription failed - only captured "{stripped}" from {round(duration_seconds)} seconds '
            "of audio. Please try recording again and speak clearly."
        )

    warnings: list[str] = []
    if length < WARN_TRANSCRIPT_CHARS and duration_seconds > WARN_AUDIO_SECONDS:
        logger.warning(
            "transcript_short_for_duration",
            intake_id=intake_id,
            transcript_length=length,
            audio_duration=duration_seconds,
        )
        warnings.append("Transcript is short for the recording length; please check it before quoting.")
    return warnings


async def transcribe_intake(
    intake_id: str,
    user_id: str,
    db: DatabaseClient | None = None,
    stt: SpeechToTextClient | None = None,
) -> TranscribeResponse:
    """
    Run the transcription stage for one intake.

    Raises:
        IntakeNotFound, InvalidState, AssetUnavailable, ProviderError,
        EmptyTranscript, SuspiciouslyShortTranscript.
    """
    db = db or get_db()
    stt = stt or SpeechToTextClient()
    bind_intake(intake_id)

    logger.info("transcription_started", user_id=user_id)

    row = await db.get_intake(intake_id, user_id)
    if not row:
        raise IntakeNotFound("Voice intake not found or access denied")
    intake = VoiceIntake.from_row(row)

    if intake.status != IntakeStatus.CAPTURED:
        logger.warning("transcription_invalid_status", intake_id=intake_id, status=intake.status.value)
        raise InvalidState(f"Voice intake already processed with status: {intake.status.value}")

    if not intake.audio_storage_path:
        raise AssetUnavailable("Voice intake has no recorded audio")

    audio = await db.download_audio(intake.audio_storage_path)
    if not audio:
        raise AssetUnavailable("Failed to download audio for this intake")

    logger.info("audio_downloaded", intake_id=intake_id, size_kb=round(len(audio) / 1024))

    result = await stt.transcribe(audio)
    duration = result.duration_seconds
    language = result.language or "en"

    logger.info(
        "transcription_complete",
        intake_id=intake_id,
        transcript_length=len(result.text.strip()),
        audio_duration_seconds=duration,
        language=language,
    )

    warnings = validate_transcript(result.text, duration, intake_id)

    await db.update_intake(
        intake_id,
        {
            "transcript_text": result.text,
            "transcript_model": stt.settings.transcription_model,
            "transcript_language": language,
            "audio_duration_seconds": round(duration),
            "status": IntakeStatus.TRANSCRIBED.value,
        },
    )

    logger.info("transcription_saved", intake_id=intake_id, status=IntakeStatus.TRANSCRIBED.value)

    return TranscribeResponse(
        intake_id=intake_id,
        transcript=result.text,
        language=language,
        duration=round(duration),
        warnings=warnings,
    )
