"""
Tests for outbound audio framing.
"""

import base64
import json
import os
from unittest.mock import AsyncMock

import pytest

from src.clinic_agent.framer import AudioFramer, chunk_encoded, DEFAULT_CHUNK_CHARS


class TestChunkEncoded:
    def test_twenty_thousand_chars_make_three_chunks(self):
        chunks = list(chunk_encoded("a" * 20000, 8000))

        assert [len(c) for c in chunks] == [8000, 8000, 4000]

    def test_exact_multiple_has_no_empty_tail(self):
        chunks = list(chunk_encoded("b" * 16000, 8000))

        assert [len(c) for c in chunks] == [8000, 8000]

    def test_empty_input_yields_nothing(self):
        assert list(chunk_encoded("", 8000)) == []

    def test_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            list(chunk_encoded("abc", 0))


class TestAudioFramer:
    def test_default_chunk_size(self):
        assert AudioFramer().chunk_size == DEFAULT_CHUNK_CHARS == 8000

    def test_frame_sequences_and_sizes(self):
        # 15000 bytes -> 20000 base64 characters
        chunks = AudioFramer(8000).frame(os.urandom(15000))

        assert [c.sequence for c in chunks] == [0, 1, 2]
        assert [len(c.payload) for c in chunks] == [8000, 8000, 4000]

    @pytest.mark.parametrize("size", [1, 2, 3, 160, 5999, 6000, 6001, 20000])
    def test_concatenated_chunks_restore_audio(self, size):
        audio = os.urandom(size)
        chunks = AudioFramer(8000).frame(audio)

        joined = "".join(c.payload for c in chunks)

        assert joined == base64.b64encode(audio).decode()
        assert base64.b64decode(joined) == audio

    def test_each_chunk_decodes_on_its_own(self):
        audio = os.urandom(15000)
        chunks = AudioFramer(8000).frame(audio)

        assert b"".join(base64.b64decode(c.payload) for c in chunks) == audio

    @pytest.mark.asyncio
    async def test_drain_sends_media_frames_in_order(self):
        audio = os.urandom(15000)
        send = AsyncMock()

        sent = await AudioFramer(8000).drain("MZ1", audio, send)

        assert sent == 3
        frames = [json.loads(call.args[0]) for call in send.await_args_list]
        assert all(f["event"] == "media" and f["streamSid"] == "MZ1" for f in frames)
        payloads = [f["media"]["payload"] for f in frames]
        assert [len(p) for p in payloads] == [8000, 8000, 4000]
        assert base64.b64decode("".join(payloads)) == audio

    @pytest.mark.asyncio
    async def test_drain_stops_on_send_failure(self):
        send = AsyncMock(side_effect=[None, ConnectionError("gone")])

        with pytest.raises(ConnectionError):
            await AudioFramer(8000).drain("MZ1", os.urandom(15000), send)

        assert send.await_count == 2
