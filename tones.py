""" sine tone bursts with a linear attack/release envelope """
import numpy as np
import config
from errors import InvalidInput


def samples_for(seconds, sample_rate=config.SAMPLING_RATE):
    """ number of samples covering the given duration, shared by encoder and decoder """
    return int(round(seconds * sample_rate))


def envelope(n, fraction=config.ENVELOPE_FRACTION, cap=config.ENVELOPE_MAX_SAMPLES):
    """ linear fade in over the first samples and fade out over the last, to avoid clicks """
    env = np.ones(n)
    ramp = min(n * fraction, cap)
    if ramp <= 0:
        return env
    idx = np.arange(n, dtype=np.float64)
    head = idx < ramp
    tail = idx > n - ramp
    env[head] = idx[head] / ramp
    env[tail] = (n - idx[tail]) / ramp
    return env


def tone(frequency, duration, amplitude=config.FLOOR_AMPLITUDE, sample_rate=config.SAMPLING_RATE):
    """ generate a sine burst of duration seconds, starting at zero phase """
    if duration <= 0:
        raise InvalidInput('tone duration must be positive', duration=duration)
    n = samples_for(duration, sample_rate)
    if n == 0:
        raise InvalidInput('tone shorter than one sample', duration=duration, sample_rate=sample_rate)
    base_samps = np.arange(n, dtype=np.float64)
    samps = np.sin(2*np.pi*base_samps*frequency / sample_rate)
    return amplitude * envelope(n) * samps


def silence(duration, sample_rate=config.SAMPLING_RATE):
    return np.zeros(samples_for(duration, sample_rate))
