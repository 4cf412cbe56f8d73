"""
Recover a QR payload hidden by transmit.py.

usage: python receive.py INPUT.wav [--timeout MS] [--band BAND] [--plot]

Decoding runs SCAN -> ALIGN -> DEMODULATE -> VALIDATE per candidate cycle,
retrying ranked candidates (then an emergency scan) until one yields a QR
code the reader accepts.
"""
import argparse
import logging
import sys
import time
from dataclasses import dataclass, field
import numpy as np
import config
import goertzel
from container import read_audio
from errors import (CycleCorrupted, ExternalDecodeFailure, InvalidInput, NoCycleDetected,
                    SoundQRError, Timeout)
from plan import all_specs, chunks_to_column, spec_for
from qrcodec import QRCodec, restore_function_patterns
from tones import samples_for

logger = logging.getLogger(__name__)


@dataclass
class Candidate:
    version: int
    start_time: float # s
    confidence: float


@dataclass
class DecodeResult:
    text: str
    version: int
    confidence: float
    candidates_examined: int
    start_time: float


class Deadline:
    """ cooperative wall-clock budget, checked between units of work """
    def __init__(self, timeout_ms=None, clock=time.monotonic):
        self.clock = clock
        self.started = clock()
        self.budget = None if timeout_ms is None else timeout_ms / 1000.

    def elapsed(self):
        return self.clock() - self.started

    def check(self, state, stage):
        if self.budget is None:
            return
        elapsed = self.elapsed()
        if elapsed >= self.budget:
            raise Timeout('decode budget of {:.0f} ms exceeded during {}'.format(self.budget * 1000, stage),
                          elapsed=elapsed, stage=stage, candidates=list(state.candidates),
                          **state.diagnostics())


@dataclass
class ScanState:
    """ all mutable state of one decode call """
    deadline: Deadline
    candidates: list = field(default_factory=list)
    max_strength: float = 0.0
    noise_floor: float = 0.0
    examined: int = 0
    tried: list = field(default_factory=list) # (version, aligned start time)
    failures: list = field(default_factory=list)

    def diagnostics(self):
        return dict(candidates_examined=self.examined, max_strength=self.max_strength,
                    noise_floor=self.noise_floor)


def mono(samples):
    """ channel 0 of a (n,) or (n, channels) buffer, as float64 """
    audio = np.asarray(samples, dtype=np.float64)
    if audio.ndim == 2:
        audio = audio[:, 0]
    if audio.ndim != 1 or audio.size == 0:
        raise InvalidInput('expected a non-empty (n,) or (n, channels) sample buffer',
                           shape=np.shape(samples))
    if not np.all(np.isfinite(audio)):
        raise InvalidInput('sample buffer contains NaN or infinite values')
    return audio


def merge_candidate(candidates, cand, separation=config.MIN_CANDIDATE_SEPARATION):
    """
    Add cand unless a stronger one lies within separation. Weaker neighbours
    are removed, so no two survivors are ever closer than separation.
    """
    close = [c for c in candidates if abs(c.start_time - cand.start_time) < separation]
    if any(c.confidence >= cand.confidence for c in close):
        return
    for c in close:
        candidates.remove(c)
    candidates.append(cand)


def check_corruption(corrupted, columns, ceiling=config.CORRUPTION_CEILING):
    rate = len(corrupted) / columns
    if rate > ceiling:
        raise CycleCorrupted('{} of {} columns corrupted'.format(len(corrupted), columns),
                             corruption_rate=rate, ceiling=ceiling, columns=list(corrupted))
    return rate


class FrameDecoder:
    """ finds framed cycles in a sample buffer and rebuilds their QR matrix """
    def __init__(self, band=config.DEFAULT_BAND, codec=None,
                 corruption_ceiling=config.CORRUPTION_CEILING,
                 max_candidates=config.MAX_CANDIDATES,
                 threshold_fraction=config.THRESHOLD_FRACTION,
                 detection_floor=config.DETECTION_FLOOR,
                 safety_margin=config.CHUNK_SAFETY_MARGIN,
                 emergency=True):
        if not 0 < corruption_ceiling <= 1:
            raise InvalidInput('corruption ceiling must be in (0, 1]', ceiling=corruption_ceiling)
        self.band = band
        self.specs = all_specs(band)
        self.codec = codec or QRCodec()
        self.corruption_ceiling = corruption_ceiling
        self.max_candidates = max_candidates
        self.threshold_fraction = threshold_fraction
        self.detection_floor = detection_floor
        self.safety_margin = safety_margin
        self.emergency = emergency

    def decode(self, samples, sample_rate, timeout_ms=config.DECODE_TIMEOUT_MS):
        audio = mono(samples)
        for spec in self.specs:
            spec.check_sample_rate(sample_rate)
        state = ScanState(Deadline(timeout_ms))

        candidates = self.scan(audio, sample_rate, state)
        for cand in candidates[:self.max_candidates]:
            result = self.attempt(audio, sample_rate, cand, state)
            if result is not None:
                return result

        if self.emergency:
            state.deadline.check(state, 'emergency scan')
            for cand in self.emergency_scan(audio, sample_rate, state):
                result = self.attempt(audio, sample_rate, cand, state)
                if result is not None:
                    return result
        raise self.exhausted(state)

    # SCAN
    def marker_profile(self, audio, fs, state, window=config.SCAN_WINDOW, step=config.SCAN_STEP):
        """
        Start-marker strength of every version per scan window => (positions, energies).

        state.max_strength and state.noise_floor track the windows scanned so
        far, and windows above the running threshold are merged into
        state.candidates as they pass, so a Timeout raised mid-scan reports
        what was already seen.
        """
        win = samples_for(window, fs)
        hop = max(1, samples_for(step, fs))
        markers = [s.start_marker_freq for s in self.specs]
        positions = np.arange(0, max(audio.size - win + 1, 0), hop)
        energies = np.zeros((positions.size, len(markers)))
        for i, pos in enumerate(positions):
            if i % config.CHECK_INTERVAL == 0:
                if i:
                    state.noise_floor = float(np.median(energies[:i].max(axis=1)))
                state.deadline.check(state, 'scan')
            energies[i] = goertzel.strengths(audio[pos:pos + win], markers, fs)
            peak = float(energies[i].max())
            state.max_strength = max(state.max_strength, peak)
            if peak >= self.threshold(state.max_strength):
                self.add_candidate(state.candidates, audio[pos:pos + win], pos / fs, energies[i], fs)
        return positions, energies

    def threshold(self, max_strength):
        return max(max_strength * self.threshold_fraction, self.detection_floor)

    def add_candidate(self, candidates, segment, start_time, row, fs):
        """ merge the version whose start marker is strongest in this window, voting near-ties """
        markers = [s.start_marker_freq for s in self.specs]
        order = np.argsort(row)[::-1]
        pick, runner = order[0], order[1]
        if row[runner] * config.VERSION_AMBIGUITY_RATIO > row[pick]:
            if goertzel.vote(segment, markers[pick], markers[runner], fs) == '1':
                pick = runner
        merge_candidate(candidates, Candidate(self.specs[pick].version, start_time, float(row[pick])))

    def scan(self, audio, fs, state):
        """ marker candidates ranked by confidence, strongest first """
        positions, energies = self.marker_profile(audio, fs, state)
        if not positions.size:
            return []
        best = energies.max(axis=1)
        state.noise_floor = float(np.median(best))
        thresh = self.threshold(state.max_strength)
        win = samples_for(config.SCAN_WINDOW, fs)

        # windows that passed an early, lower running threshold are re-judged
        state.candidates = []
        for i in np.flatnonzero(best >= thresh):
            pos = positions[i]
            self.add_candidate(state.candidates, audio[pos:pos + win], pos / fs, energies[i], fs)
        state.deadline.check(state, 'scan')
        ranked = sorted(state.candidates, key=lambda c: c.confidence, reverse=True)
        logger.debug('scan: max %.6f, floor %.6f, threshold %.6f, %d candidates',
                     state.max_strength, state.noise_floor, thresh, len(ranked))
        return ranked

    def emergency_scan(self, audio, fs, state):
        """ tiny windows, near-zero threshold, version 1 only; best effort """
        spec = spec_for(1, self.band)
        win = samples_for(config.EMERGENCY_WINDOW, fs)
        hop = max(1, samples_for(config.EMERGENCY_STEP, fs))
        hits = []
        for i, pos in enumerate(range(0, audio.size - win + 1, hop)):
            if i % config.CHECK_INTERVAL == 0:
                state.deadline.check(state, 'emergency scan')
            e = goertzel.strength(audio[pos:pos + win], spec.start_marker_freq, fs)
            if e > config.EMERGENCY_THRESHOLD:
                merge_candidate(hits, Candidate(1, pos / fs, e))
        hits.sort(key=lambda c: c.confidence, reverse=True)
        fresh = [c for c in hits if not self.already_tried(c, state)]
        logger.debug('emergency scan: %d hits, %d untried', len(hits), len(fresh))
        return fresh[:config.EMERGENCY_CANDIDATES]

    def already_tried(self, cand, state):
        return any(v == cand.version and abs(t - cand.start_time) < config.ALIGN_COARSE_RANGE
                   for v, t in state.tried)

    # ALIGN
    def align(self, audio, fs, cand, spec):
        """ sample index where the start-marker energy peaks near the candidate """
        win = spec.marker_samples(fs)
        center = samples_for(cand.start_time, fs)
        last = audio.size - win
        if last < 0:
            return center
        best_pos, best_e = min(max(center, 0), last), -1.0

        def search(lo, hi, step):
            nonlocal best_pos, best_e
            for pos in range(max(lo, 0), min(hi, last) + 1, max(step, 1)):
                e = goertzel.strength(audio[pos:pos + win], spec.start_marker_freq, fs)
                if e > best_e:
                    best_pos, best_e = pos, e

        rng = samples_for(config.ALIGN_COARSE_RANGE, fs)
        search(center - rng, center + rng, samples_for(config.ALIGN_COARSE_STEP, fs))
        coarse = best_pos
        rng = samples_for(config.ALIGN_FINE_RANGE, fs)
        search(coarse - rng, coarse + rng, samples_for(config.ALIGN_FINE_STEP, fs))
        logger.debug('align v%d: %.4fs => %.4fs', spec.version, cand.start_time, best_pos / fs)
        return best_pos

    # DEMODULATE
    def demodulate(self, audio, fs, spec, start, state=None):
        """ winner-take-all chunk decisions => (matrix, corrupted column indices) """
        size = spec.matrix_size
        chunk_len = spec.chunk_samples(fs)
        margin = samples_for(self.safety_margin, fs)
        if 2 * margin >= chunk_len:
            margin = 0
        grid = spec.grid
        matrix = np.zeros((size, size), dtype=bool)
        corrupted = []
        for col in range(size):
            chunks = []
            for ch in range(spec.chunks_per_column):
                s = start + spec.chunk_offset(col, ch, fs)
                e = s + chunk_len - margin
                s += margin
                if s < 0 or e > audio.size:
                    break
                chunks.append(int(np.argmax(goertzel.strengths(audio[s:e], grid, fs))))
            if state is not None:
                state.deadline.check(state, 'demodulate')
            if len(chunks) < spec.chunks_per_column:
                corrupted.append(col)
                continue
            column, padding_ok = chunks_to_column(chunks, spec)
            if not padding_ok:
                corrupted.append(col)
                continue
            matrix[:, col] = column
        return matrix, corrupted

    def check_end_marker(self, audio, fs, spec, start):
        """ ensemble vote at the end-marker slot: '1' end marker, '0' start marker, None unsure """
        win = spec.marker_samples(fs)
        pos = start + spec.end_marker_offset(fs)
        segment = audio[pos:pos + win]
        if segment.size < win // 2:
            return None
        return goertzel.vote(segment, spec.start_marker_freq, spec.end_marker_freq, fs)

    # VALIDATE
    def decode_cycle(self, audio, fs, spec, start, state=None):
        """ one aligned cycle => (text, end marker confirmed), raises on rejection """
        if start + spec.marker_samples(fs) >= audio.size:
            raise CycleCorrupted('data region lies outside the buffer', corruption_rate=1.0,
                                 reason='out of bounds')
        end_vote = self.check_end_marker(audio, fs, spec, start)
        if end_vote == '0':
            raise CycleCorrupted('start marker found where the end marker belongs',
                                 corruption_rate=1.0, reason='misframed')
        matrix, corrupted = self.demodulate(audio, fs, spec, start, state)
        rate = check_corruption(corrupted, spec.matrix_size, self.corruption_ceiling)
        # finders, timing and alignment are fixed per version; the reader's own
        # error correction only covers data modules
        matrix, restored = restore_function_patterns(matrix, spec.version)
        if restored:
            logger.debug('v%d: restored %d function modules', spec.version, restored)
        text = self.codec.decode(matrix)
        if not text:
            raise ExternalDecodeFailure('QR reader rejected the rebuilt matrix',
                                        corruption_rate=rate, version=spec.version)
        return text, end_vote == '1'

    def attempt(self, audio, fs, cand, state):
        """ align, demodulate and validate one candidate; None when it fails """
        state.deadline.check(state, 'align')
        spec = spec_for(cand.version, self.band)
        start = self.align(audio, fs, cand, spec)
        state.examined += 1
        state.tried.append((cand.version, start / fs))
        try:
            text, end_confirmed = self.decode_cycle(audio, fs, spec, start, state)
        except (CycleCorrupted, ExternalDecodeFailure) as e:
            logger.debug('candidate v%d at %.3fs rejected: %s', cand.version, start / fs, e)
            state.failures.append(e)
            return None
        confidence = cand.confidence * (1 + config.END_MARKER_BONUS if end_confirmed else 1)
        logger.info('decoded version %d cycle at %.3fs', cand.version, start / fs)
        return DecodeResult(text, cand.version, confidence, state.examined, start / fs)

    def exhausted(self, state):
        diag = state.diagnostics()
        if state.candidates:
            # the furthest a candidate got is the most useful failure to report
            for kind in (ExternalDecodeFailure, CycleCorrupted):
                for failure in state.failures:
                    if isinstance(failure, kind):
                        details = dict(failure.diagnostics)
                        details.update(diag)
                        return kind('all candidates failed, last reason: {}'.format(
                            failure.args[0]), **details)
        return NoCycleDetected('no Sound-QR cycle detected', **diag)


def decode(samples, sample_rate, timeout_ms=config.DECODE_TIMEOUT_MS, band=config.DEFAULT_BAND,
           **kwargs):
    """ samples => DecodeResult, raises a DecodeError subclass on failure """
    return FrameDecoder(band, **kwargs).decode(samples, sample_rate, timeout_ms)


def plot_scan(audio, fs, decoder):
    """ marker strength per version over time, with the detection threshold """
    import matplotlib.pyplot as plt
    state = ScanState(Deadline(None))
    positions, energies = decoder.marker_profile(audio, fs, state)
    times = positions / fs
    plt.figure()
    plt.title('start marker strength')
    for i, spec in enumerate(decoder.specs):
        plt.plot(times, energies[:, i], label='v{} {:.0f} Hz'.format(spec.version, spec.start_marker_freq))
    if energies.size:
        plt.axhline(decoder.threshold(energies.max()), color='k', linestyle='--', label='threshold')
    plt.xlabel('time (s)')
    plt.legend()
    plt.show()


def main(argv=None):
    parser = argparse.ArgumentParser(description='recover a text payload hidden in an audio file')
    parser.add_argument('input', nargs='?', help='.wav or .ui67 file')
    parser.add_argument('-t', '--timeout', type=float, default=config.DECODE_TIMEOUT_MS, help='budget, ms')
    parser.add_argument('-b', '--band', default=config.DEFAULT_BAND, choices=sorted(config.BANDS))
    parser.add_argument('--ceiling', type=float, default=config.CORRUPTION_CEILING,
                        help='fraction of corrupted columns that rejects a cycle')
    parser.add_argument('--plot', action='store_true', help='plot the marker scan before decoding')
    parser.add_argument('--listen', action='store_true', help='decode from the microphone instead')
    parser.add_argument('--seconds', type=float, default=None, help='give up listening after this long')
    parser.add_argument('--device', type=int, default=None, help='capture device index')
    args = parser.parse_args(argv)
    if not args.listen and args.input is None:
        parser.error('an input file is required unless --listen is given')
    logging.basicConfig(level=logging.DEBUG if config.DEBUG else logging.INFO)

    try:
        if args.listen:
            from listen import run_live
            result = run_live(args.seconds, args.band, args.device)
            if result is None:
                print('nothing decoded', file=sys.stderr)
                return 1
        else:
            audio, fs = read_audio(args.input)
            decoder = FrameDecoder(args.band, corruption_ceiling=args.ceiling)
            if args.plot:
                plot_scan(mono(audio), fs, decoder)
            result = decoder.decode(audio, fs, args.timeout)
    except SoundQRError as e:
        print('decode failed [{}]: {}'.format(e.kind, e), file=sys.stderr)
        return 1
    print('\ndecoded message:')
    print(result.text)
    print()
    print('version:', result.version)
    print('confidence: {:.6f}'.format(result.confidence))
    print('candidates examined:', result.candidates_examined)
    return 0


if __name__ == '__main__':
    sys.exit(main())
