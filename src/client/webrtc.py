"""aiortc-backed capabilities for the voice client.

Implements the capability interfaces on top of aiortc:
- AiortcTransport: RTCPeerConnection configured with STUN/TURN servers
- MicrophoneCapability: system microphone via aiortc's MediaPlayer (audio only)
- SpeakerSink: plays the partner's audio track through sounddevice

The session never touches audio frames itself; these classes are the only
place media flows.
"""

import asyncio
import logging
import platform
from typing import Any

import av
import numpy as np
from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaBlackhole, MediaPlayer
from aiortc.mediastreams import MediaStreamError
from aiortc.sdp import candidate_from_sdp
from av.error import FFmpegError

from src.client.capabilities import (
    HandshakeError,
    MediaCapability,
    MediaUnavailableError,
    PeerTransport,
    PeerTransportFactory,
    TransportEvents,
)
from src.client.config import AudioConfig, IceConfig

logger = logging.getLogger(__name__)


def _default_capture_source() -> tuple[str, str]:
    """Platform default (file, format) pair for microphone capture."""
    system = platform.system()
    if system == "Darwin":
        return ":0", "avfoundation"
    if system == "Windows":
        return "audio=Microphone", "dshow"
    return "default", "pulse"


class MutableAudioTrack(MediaStreamTrack):
    """Audio track that forwards a source track, replacing frames with silence when muted."""

    kind = "audio"

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self._source = source
        self.muted = False

    async def recv(self) -> av.AudioFrame:
        frame = await self._source.recv()
        if not self.muted:
            return frame

        silence = av.AudioFrame(
            format=frame.format.name, layout=frame.layout.name, samples=frame.samples
        )
        for plane in silence.planes:
            plane.update(bytes(plane.buffer_size))
        silence.pts = frame.pts
        silence.sample_rate = frame.sample_rate
        silence.time_base = frame.time_base
        return silence

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class MicrophoneCapability(MediaCapability):
    """System microphone, audio-only.

    Echo cancellation, noise suppression and auto gain are left to the
    platform audio stack (e.g. a PulseAudio echo-cancel source selected as
    ``device``); the requested constraints are logged with the device.
    """

    def __init__(self, config: AudioConfig | None = None) -> None:
        self.config = config or AudioConfig()
        self._player: MediaPlayer | None = None
        self._track: MutableAudioTrack | None = None

    @property
    def is_acquired(self) -> bool:
        return self._track is not None

    @property
    def tracks(self) -> list[Any]:
        return [self._track] if self._track is not None else []

    async def acquire(self) -> None:
        if self._track is not None:
            return

        default_file, default_format = _default_capture_source()
        source = self.config.device or default_file
        input_format = self.config.input_format or default_format

        try:
            player = MediaPlayer(source, format=input_format)
        except (FFmpegError, OSError) as e:
            raise MediaUnavailableError(f"Cannot open microphone '{source}': {e}") from e

        if player.audio is None:
            raise MediaUnavailableError(f"No audio stream on capture device '{source}'")

        self._player = player
        self._track = MutableAudioTrack(player.audio)
        logger.info(
            "Microphone track acquired",
            extra={
                "device": source,
                "format": input_format,
                "echo_cancellation": self.config.echo_cancellation,
                "noise_suppression": self.config.noise_suppression,
                "auto_gain_control": self.config.auto_gain_control,
            },
        )

    async def stop(self) -> None:
        if self._track is not None:
            self._track.stop()
            self._track = None
        self._player = None

    def set_muted(self, muted: bool) -> None:
        if self._track is not None:
            self._track.muted = muted
        logger.info("Microphone muted" if muted else "Microphone unmuted")


class AiortcTransport(PeerTransport):
    """PeerTransport wrapping an aiortc RTCPeerConnection.

    aiortc gathers candidates before returning a local description, so the
    local ``on_ice_candidate`` callback only ever reports end-of-candidates;
    remote trickled candidates are still accepted.
    """

    def __init__(self, ice_config: IceConfig, events: TransportEvents) -> None:
        ice_servers = [
            RTCIceServer(urls=entry.urls, username=entry.username, credential=entry.credential)
            for entry in ice_config.ice_servers()
        ]
        self._pc = RTCPeerConnection(configuration=RTCConfiguration(iceServers=ice_servers))
        self._events = events

        @self._pc.on("iceconnectionstatechange")
        def on_ice_state() -> None:
            events.on_ice_connection_state(self._pc.iceConnectionState)

        @self._pc.on("connectionstatechange")
        def on_connection_state() -> None:
            events.on_connection_state(self._pc.connectionState)

        @self._pc.on("icegatheringstatechange")
        def on_gathering_state() -> None:
            if self._pc.iceGatheringState == "complete":
                events.on_ice_candidate(None)

        @self._pc.on("track")
        def on_track(track: MediaStreamTrack) -> None:
            if track.kind == "audio":
                events.on_track(track)

    def add_track(self, track: Any) -> None:
        self._pc.addTrack(track)

    async def create_offer(self, ice_restart: bool = False) -> str:
        if ice_restart:
            # aiortc has no iceRestart option; a fresh offer renegotiates the path
            logger.info("Creating restart offer")
        try:
            offer = await self._pc.createOffer()
            await self._pc.setLocalDescription(offer)
        except Exception as e:
            raise HandshakeError(f"Failed to create offer: {e}") from e
        return self._pc.localDescription.sdp

    async def create_answer(self) -> str:
        try:
            answer = await self._pc.createAnswer()
            await self._pc.setLocalDescription(answer)
        except Exception as e:
            raise HandshakeError(f"Failed to create answer: {e}") from e
        return self._pc.localDescription.sdp

    async def set_remote_description(self, kind: str, sdp: str) -> None:
        try:
            await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type=kind))
        except Exception as e:
            raise HandshakeError(f"Failed to apply remote {kind}: {e}") from e

    async def add_ice_candidate(self, candidate: dict[str, Any] | None) -> None:
        if candidate is None or not candidate.get("candidate"):
            await self._pc.addIceCandidate(None)
            return

        line = candidate["candidate"]
        if line.startswith("candidate:"):
            line = line[len("candidate:") :]
        ice_candidate = candidate_from_sdp(line)
        ice_candidate.sdpMid = candidate.get("sdpMid")
        ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self._pc.addIceCandidate(ice_candidate)

    @property
    def has_remote_description(self) -> bool:
        return self._pc.remoteDescription is not None

    @property
    def ice_connection_state(self) -> str:
        return str(self._pc.iceConnectionState)

    @property
    def connection_state(self) -> str:
        return str(self._pc.connectionState)

    async def close(self) -> None:
        await self._pc.close()


class AiortcTransportFactory(PeerTransportFactory):
    def __init__(self, ice_config: IceConfig) -> None:
        self.ice_config = ice_config

    def create(self, events: TransportEvents) -> PeerTransport:
        return AiortcTransport(self.ice_config, events)


class SpeakerSink:
    """Plays remote audio tracks on the default output device.

    Uses sounddevice for output. Without an output device the track is still
    consumed (so the transport keeps flowing) but discarded.
    """

    def __init__(self, device: str | None = None) -> None:
        self.device = device
        self.muted = False
        self._tasks: set[asyncio.Task[None]] = set()
        self._blackhole: MediaBlackhole | None = None

    def set_muted(self, muted: bool) -> None:
        """Silence or restore the partner's audio. Frames are still consumed."""
        self.muted = muted
        logger.info("Speaker muted" if muted else "Speaker unmuted")

    def play(self, track: MediaStreamTrack) -> None:
        task = asyncio.create_task(self._play(track))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _play(self, track: MediaStreamTrack) -> None:
        try:
            import sounddevice as sd
        except OSError as e:
            logger.warning("No audio output available, discarding remote audio", extra={"error": str(e)})
            self._blackhole = MediaBlackhole()
            self._blackhole.addTrack(track)
            await self._blackhole.start()
            return

        stream: Any = None
        try:
            while True:
                frame = await track.recv()
                samples = frame.to_ndarray()
                if stream is None:
                    channels = len(frame.layout.channels)
                    stream = sd.RawOutputStream(
                        samplerate=frame.sample_rate,
                        channels=channels,
                        dtype="int16",
                        device=self.device,
                    )
                    stream.start()
                self._write(stream, samples)
        except MediaStreamError:
            logger.info("Remote audio track ended")
        except asyncio.CancelledError:
            pass
        finally:
            if stream is not None:
                stream.stop()
                stream.close()

    def _write(self, stream: Any, samples: np.ndarray) -> None:
        if self.muted:
            return
        stream.write(np.ascontiguousarray(samples, dtype=np.int16).tobytes())

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._blackhole is not None:
            await self._blackhole.stop()
            self._blackhole = None
