'''
Single-frequency energy estimation and the boundary-bit detector ensemble.

strength() is the primary probe used for marker scanning and chunk decisions.
The binary detectors below only break ties between two candidate frequencies
(e.g. end marker vs start marker) and are combined through vote().
'''
import logging
from collections import Counter
import numpy as np
from scipy import signal
import config

logger = logging.getLogger(__name__)


def _resonator_coeff(n, freq, fs):
    k = 0.5 + (n * freq) / fs
    omega = 2.0 * np.pi * k / n
    return 2.0 * np.cos(omega)


def strength(samples, freq, fs=config.SAMPLING_RATE):
    '''
    Goertzel magnitude at freq, normalised by window length.

    The recursion q0 = coeff*q1 - q2 + x[i] is a second-order IIR resonator,
    run here through lfilter; the last two states give the magnitude.
    '''
    samples = np.asarray(samples, dtype=np.float64)
    n = samples.size
    if n == 0:
        return 0.0
    coeff = _resonator_coeff(n, freq, fs)
    q = signal.lfilter([1.0], [1.0, -coeff, 1.0], samples)
    q1 = q[-1]
    q2 = q[-2] if n > 1 else 0.0
    power = q1 * q1 + q2 * q2 - q1 * q2 * coeff
    return float(np.sqrt(max(power, 0.0)) / n)


def strengths(samples, freqs, fs=config.SAMPLING_RATE):
    ''' strength() for every frequency in freqs, same estimator for each '''
    samples = np.asarray(samples, dtype=np.float64)
    return np.array([strength(samples, f, fs) for f in freqs])


def correlation(segment, freq, fs=config.SAMPLING_RATE):
    ''' projection onto a reference sine, absolute and normalised '''
    times = np.arange(segment.size) / fs
    return abs(np.sum(segment * np.sin(2*np.pi*freq*times))) / segment.size


def dft_power(segment, freq, fs=config.SAMPLING_RATE):
    ''' explicit two-term (cosine + sine) magnitude at freq '''
    times = np.arange(segment.size) / fs
    re = np.sum(segment * np.cos(2*np.pi*freq*times))
    im = np.sum(segment * np.sin(2*np.pi*freq*times))
    return np.sqrt(re*re + im*im) / segment.size


def zero_crossings(segment):
    signs = segment >= 0
    return int(np.count_nonzero(signs[1:] != signs[:-1]))


def rms(segment):
    return float(np.sqrt(np.mean(np.square(segment)))) if segment.size else 0.0


def _decide(p0, p1, threshold, ratio):
    if p0 > threshold and p0 > p1 * ratio:
        return '0'
    if p1 > threshold and p1 > p0 * ratio:
        return '1'
    return None


def detect_correlation(segment, freq0, freq1, fs=config.SAMPLING_RATE):
    if rms(segment) < config.CORRELATION_RMS_GATE:
        return None
    return _decide(correlation(segment, freq0, fs), correlation(segment, freq1, fs),
                   config.CORRELATION_THRESHOLD, config.CORRELATION_RATIO)


def detect_relaxed(segment, freq0, freq1, fs=config.SAMPLING_RATE):
    ''' lower gate, threshold and separation; finds weak tones, admits more false hits '''
    if rms(segment) < config.RELAXED_RMS_GATE:
        return None
    return _decide(correlation(segment, freq0, fs), correlation(segment, freq1, fs),
                   config.RELAXED_THRESHOLD, config.RELAXED_RATIO)


def detect_dft(segment, freq0, freq1, fs=config.SAMPLING_RATE):
    return _decide(dft_power(segment, freq0, fs), dft_power(segment, freq1, fs),
                   config.DFT_THRESHOLD, config.DFT_RATIO)


def detect_zero_crossing(segment, freq0, freq1, fs=config.SAMPLING_RATE):
    ''' compare observed crossings with the count each frequency would produce '''
    duration = segment.size / fs
    crossings = zero_crossings(segment)
    if crossings <= config.ZERO_CROSSING_MIN:
        return None
    diff0 = abs(crossings - freq0 * 2 * duration)
    diff1 = abs(crossings - freq1 * 2 * duration)
    if diff0 < diff1 * config.ZERO_CROSSING_FACTOR:
        return '0'
    if diff1 < diff0 * config.ZERO_CROSSING_FACTOR:
        return '1'
    return None


# primary detector first, it settles ties
DETECTORS = (detect_correlation, detect_relaxed, detect_dft, detect_zero_crossing)


def vote(segment, freq0, freq1, fs=config.SAMPLING_RATE, detectors=DETECTORS):
    ''' majority of the non-null detector decisions between freq0 ('0') and freq1 ('1') '''
    segment = np.asarray(segment, dtype=np.float64)
    if segment.size == 0:
        return None
    results = [detect(segment, freq0, freq1, fs) for detect in detectors]
    tally = Counter(r for r in results if r is not None)
    logger.debug('vote %.0f/%.0f Hz: %s', freq0, freq1, results)
    if not tally:
        return None
    (top, top_n), *rest = tally.most_common()
    if rest and rest[0][1] == top_n:
        return results[0]
    return top
