import itertools

import numpy as np
import pytest

import config
from conftest import BYTE_CAPACITY, FS, mix_cycles, noise, payload
from errors import (CycleCorrupted, DecodeError, ExternalDecodeFailure, InvalidInput, NoCycleDetected,
                    Timeout)
from plan import spec_for
import receive
from receive import Candidate, FrameDecoder, check_corruption, decode, merge_candidate
from transmit import FrameEncoder, encode_text


def test_hello_world_in_noise(hello_world):
    result = decode(hello_world, FS)
    assert result.text == 'Hello World'
    assert result.version == 1
    assert result.candidates_examined >= 1
    assert result.confidence > 0


@pytest.mark.parametrize('version', [1, 2, 3, 4, 5])
def test_round_trip_near_capacity(codec, version):
    text = payload(BYTE_CAPACITY[version] - 2)
    carrier = noise(spec_for(version).cycle_duration(FS) + 1.0, seed=10 + version)
    signal = encode_text(carrier, FS, text, version=version, cycles=3, codec=codec)
    result = FrameDecoder(codec=codec).decode(signal, FS)
    assert result.text == text
    assert result.version == version


def test_single_cycle_is_enough(codec):
    signal = encode_text(noise(8.0, seed=20), FS, 'one cycle', version=1, cycles=1, codec=codec)
    assert decode(signal, FS).text == 'one cycle'


def test_silent_carrier_uses_floor_amplitude(codec):
    signal = encode_text(np.zeros(6 * FS), FS, 'silence', version=1, cycles=1, codec=codec)
    assert decode(signal, FS).text == 'silence'


def test_loud_carrier(codec):
    # the embed level follows the carrier peak
    carrier = noise(12.0, seed=21, sigma=0.1)
    signal = encode_text(carrier, FS, 'loud', version=1, cycles=2, codec=codec)
    assert decode(signal, FS).text == 'loud'


def test_stereo_input_reads_channel_zero(codec):
    signal = encode_text(noise(6.0, seed=22), FS, 'stereo', version=1, cycles=1, stereo=True,
                         codec=codec)
    assert decode(signal, FS).text == 'stereo'


def test_signal_after_leading_carrier(codec):
    spec = spec_for(1)
    matrix = codec.encode('late start', 1)
    chunks = FrameEncoder().chunk_sequence(matrix, 1)
    lead = int(1.237 * FS)
    carrier = noise(9.0, seed=23)
    tail = mix_cycles(carrier[lead:], spec, [chunks])
    signal = np.concatenate([carrier[:lead], tail])
    result = decode(signal, FS)
    assert result.text == 'late start'
    assert result.start_time == pytest.approx(1.237, abs=0.005)


def test_ultrasonic_band(codec):
    fs = 96000
    carrier = noise(6.0, seed=24, fs=fs)
    signal = encode_text(carrier, fs, 'ultra', version=1, cycles=1, band='ultrasonic', codec=codec)
    result = decode(signal, fs, band='ultrasonic')
    assert result.text == 'ultra'
    with pytest.raises(InvalidInput):
        decode(signal[:FS], FS, band='ultrasonic')


def test_single_chunk_error_is_absorbed(codec):
    spec = spec_for(1)
    matrix = codec.encode('fix me', 1)
    chunks = FrameEncoder().chunk_sequence(matrix, 1)
    # rows 12-17 of column 10 sit in the data region
    chunks[10, 2] ^= 1
    signal = mix_cycles(noise(18.0, seed=25), spec, [chunks] * 3)
    assert decode(signal, FS).text == 'fix me'


@pytest.mark.parametrize('version, flips', [
    # timing row 6 crosses chunk 1 of the middle columns, rows 8 and 10 are data
    (1, [(9, 1, 0b101010), (11, 1, 0b100000)]),
    # chunks inside the three finders and a separator
    (1, [(0, 0, 0b111111), (20, 0, 0b111111), (2, 3, 0b111000), (14, 1, 0b100000),
         (13, 1, 0b110000)]),
    # column 6 holds no data, so zero-filling it after a padding error loses nothing
    (1, [(6, 3, 0b000001), (9, 1, 0b101010), (10, 2, 0b000001)]),
    # alignment pattern, dark module and timing column
    (2, [(18, 3, 0b111000), (16, 2, 0b000011), (8, 2, 0b000001), (6, 2, 0b101010)]),
])
def test_damaged_function_patterns_still_decode(codec, version, flips):
    spec = spec_for(version)
    chunks = FrameEncoder().chunk_sequence(codec.encode('patched', version), version)
    for col, ch, bits in flips:
        chunks[col, ch] ^= bits
    signal = mix_cycles(noise(spec.cycle_duration(FS) + 1.0, seed=31), spec, [chunks])
    result = FrameDecoder(codec=codec, emergency=False).decode(signal, FS)
    assert result.text == 'patched'
    assert result.version == version


class AcceptingCodec:
    """ accepts any matrix and keeps what it was shown """
    def __init__(self):
        self.seen = []

    def decode(self, matrix):
        self.seen.append(matrix)
        return 'accepted'


@pytest.mark.parametrize('columns', [1, 3, 6])
def test_corruption_under_ceiling_reaches_reader(codec, columns):
    spec = spec_for(1)
    matrix = codec.encode('under', 1)
    chunks = FrameEncoder().chunk_sequence(matrix, 1)
    # padding errors in the leading columns, one data module flipped at row 9 of column 10
    chunks[:columns, -1] |= 1
    chunks[10, 1] ^= 0b000100
    signal = mix_cycles(noise(7.0, seed=32), spec, [chunks])
    reader = AcceptingCodec()
    result = FrameDecoder(codec=reader, emergency=False).decode(signal, FS)
    assert result.text == 'accepted'
    seen = reader.seen[0]
    # corrupted columns arrive zero-filled apart from the restored fixed modules
    assert not seen[9:13, :columns].any()
    assert np.array_equal(seen[:7, :columns], matrix[:7, :columns])
    assert np.array_equal(seen[:, columns:10], matrix[:, columns:10])
    assert np.array_equal(seen[:, 11:], matrix[:, 11:])
    assert seen[9, 10] != matrix[9, 10]


def test_corruption_ceiling_rejects_cycle(codec):
    spec = spec_for(1)
    chunks = FrameEncoder().chunk_sequence(codec.encode('too broken', 1), 1)
    # a set padding bit marks the column corrupted, 8 of 21 columns exceeds 30%
    chunks[:8, -1] |= 1
    signal = mix_cycles(noise(18.0, seed=26), spec, [chunks] * 3)
    with pytest.raises(CycleCorrupted) as info:
        FrameDecoder(codec=codec, emergency=False).decode(signal, FS)
    assert info.value.corruption_rate == pytest.approx(8 / 21)
    assert info.value.candidates_examined == 3


def test_corruption_ceiling_is_configurable(codec):
    spec = spec_for(1)
    chunks = FrameEncoder().chunk_sequence(codec.encode('ceiling', 1), 1)
    chunks[:2, -1] |= 1
    signal = mix_cycles(noise(7.0, seed=27), spec, [chunks])
    decoder = FrameDecoder(codec=codec, corruption_ceiling=0.05, emergency=False)
    with pytest.raises(CycleCorrupted):
        decoder.decode(signal, FS)


def test_check_corruption_boundary():
    assert check_corruption([0, 1, 2, 3], 21, 0.2) == pytest.approx(4 / 21)
    with pytest.raises(CycleCorrupted) as info:
        check_corruption([0, 1, 2, 3, 4], 21, 0.2)
    assert info.value.corruption_rate == pytest.approx(5 / 21)
    with pytest.raises(InvalidInput):
        FrameDecoder(corruption_ceiling=0)


def test_redundancy_last_cycle_survives(codec):
    spec = spec_for(1)
    chunks = FrameEncoder().chunk_sequence(codec.encode('third time', 1), 1)
    # every chunk 63 sets every padding bit: cycles 1 and 2 are unreadable
    destroyed = np.full_like(chunks, 63)
    signal = mix_cycles(noise(18.0, seed=28), spec, [destroyed, destroyed, chunks])
    result = decode(signal, FS)
    assert result.text == 'third time'
    assert result.start_time == pytest.approx(2 * spec.cycle_duration(FS), abs=0.005)


def test_no_signal(codec):
    with pytest.raises(NoCycleDetected) as info:
        FrameDecoder(codec=codec).decode(noise(8.0, seed=29), FS)
    assert info.value.max_strength < config.DETECTION_FLOOR
    assert isinstance(info.value, DecodeError)


def test_timeout_reports_candidates(hello_world):
    with pytest.raises(Timeout) as info:
        decode(hello_world, FS, timeout_ms=0)
    assert info.value.elapsed >= 0
    assert info.value.candidates == []
    assert info.value.kind == 'timeout'


def test_timeout_during_scan_keeps_what_was_seen(hello_world):
    ticks = itertools.count()
    # a second per clock reading: the ninth check, 256 windows (12.8 s) in, expires
    state = receive.ScanState(receive.Deadline(8500, clock=lambda: next(ticks)))
    with pytest.raises(Timeout) as info:
        FrameDecoder().scan(hello_world, FS, state)
    err = info.value
    assert err.diagnostics['stage'] == 'scan'
    assert err.elapsed == 9
    assert err.max_strength > config.DETECTION_FLOOR
    assert 0 < err.diagnostics['noise_floor'] < err.max_strength
    starts = sorted(c.start_time for c in err.candidates)
    assert len(starts) == 3
    assert starts[2] == pytest.approx(2 * spec_for(1).cycle_duration(FS), abs=0.06)
    assert all(c.version == 1 for c in err.candidates)


def test_invalid_buffers():
    with pytest.raises(InvalidInput):
        decode(np.array([]), FS)
    with pytest.raises(InvalidInput):
        decode(np.full(FS, np.nan), FS)
    with pytest.raises(InvalidInput):
        decode(np.zeros(FS), 16000)


def test_input_is_not_mutated(hello_world):
    before = hello_world.copy()
    decode(hello_world, FS)
    assert np.array_equal(hello_world, before)


def test_scan_finds_every_cycle(hello_world):
    decoder = FrameDecoder()
    state = receive.ScanState(receive.Deadline(None))
    found = decoder.scan(hello_world, FS, state)
    starts = sorted(c.start_time for c in found)
    assert len(starts) == 3
    for i, start in enumerate(starts):
        assert start == pytest.approx(i * spec_for(1).cycle_duration(FS), abs=0.06)
    assert all(c.version == 1 for c in found)


def test_align_lands_on_marker(hello_world):
    decoder = FrameDecoder()
    spec = spec_for(1)
    cycle = spec.cycle_samples(FS)
    pos = decoder.align(hello_world, FS, Candidate(1, cycle / FS + 0.04, 0.01), spec)
    assert abs(pos - cycle) <= samples_ms(5)


def samples_ms(ms):
    return int(round(ms / 1000. * FS))


def test_end_marker_vote(hello_world):
    decoder = FrameDecoder()
    spec = spec_for(1)
    assert decoder.check_end_marker(hello_world, FS, spec, 0) == '1'


def test_merge_keeps_the_stronger():
    found = []
    merge_candidate(found, Candidate(1, 1.0, 0.1))
    merge_candidate(found, Candidate(2, 1.5, 0.3))
    merge_candidate(found, Candidate(1, 3.0, 0.2))
    merge_candidate(found, Candidate(1, 3.5, 0.1))
    assert [(c.version, c.start_time) for c in found] == [(2, 1.5), (1, 3.0)]


def test_merge_never_leaves_a_close_pair():
    found = [Candidate(1, 1.0, 0.1), Candidate(1, 2.4, 0.2)]
    # 1.7 is within 0.8 s of both and stronger than either
    merge_candidate(found, Candidate(1, 1.7, 0.3))
    assert [(c.start_time, c.confidence) for c in found] == [(1.7, 0.3)]
    found = [Candidate(1, 1.0, 0.1), Candidate(1, 2.4, 0.5)]
    merge_candidate(found, Candidate(1, 1.7, 0.3))
    assert [(c.start_time, c.confidence) for c in found] == [(1.0, 0.1), (2.4, 0.5)]


def test_exhaustion_prefers_external_failure():
    decoder = FrameDecoder()
    state = receive.ScanState(receive.Deadline(None))
    state.candidates.append(Candidate(1, 0.0, 0.01))
    state.failures = [CycleCorrupted('bad', corruption_rate=0.5),
                      ExternalDecodeFailure('unreadable', corruption_rate=0.1)]
    state.examined = 2
    err = decoder.exhausted(state)
    assert isinstance(err, ExternalDecodeFailure)
    assert err.candidates_examined == 2


def test_cli_decodes_file(tmp_path, capsys, hello_world):
    from container import write_audio
    path = str(tmp_path / 'hello.wav')
    write_audio(path, hello_world, FS)
    assert receive.main([path]) == 0
    assert 'Hello World' in capsys.readouterr().out


def test_cli_reports_failure(tmp_path, capsys):
    from container import write_audio
    path = str(tmp_path / 'noise.ui67')
    write_audio(path, noise(6.0, seed=30), FS)
    assert receive.main([path]) == 1
    assert 'no_cycle_detected' in capsys.readouterr().err
