"""
Embed a QR code into a carrier as framed tone cycles.

usage: python transmit.py MESSAGE CARRIER.wav OUT.wav [-v VERSION] [-c CYCLES]
       python transmit.py -f MESSAGE_FILE CARRIER.wav OUT.ui67 ...
"""
import argparse
import logging
import sys
import numpy as np
import config
from container import read_audio, write_audio
from errors import InsufficientCarrierDuration, InvalidInput, SoundQRError
from plan import chunk_to_frequency, matrix_to_chunks, spec_for
from qrcodec import QRCodec
from tones import silence, tone

logger = logging.getLogger(__name__)


def peak(samples):
    samples = np.asarray(samples)
    return float(np.max(np.abs(samples))) if samples.size else 0.0


def require_full_cycle(carrier_samples, spec, sample_rate):
    needed = spec.cycle_samples(sample_rate)
    if carrier_samples < needed:
        raise InsufficientCarrierDuration(
            'carrier shorter than one version {} cycle'.format(spec.version),
            carrier_seconds=carrier_samples / sample_rate, cycle_seconds=needed / sample_rate)


class FrameEncoder:
    """ turns a bit matrix into marker-framed tone cycles and mixes them into a carrier """
    def __init__(self, band=config.DEFAULT_BAND, relative_amplitude=config.RELATIVE_AMPLITUDE,
                 floor_amplitude=config.FLOOR_AMPLITUDE):
        self.band = band
        self.relative_amplitude = relative_amplitude
        self.floor_amplitude = floor_amplitude

    def embed_amplitude(self, carrier):
        """ follow the carrier loudness, but stay audible to the decoder on silent carriers """
        return max(peak(carrier) * self.relative_amplitude, self.floor_amplitude)

    def chunk_sequence(self, matrix, version):
        """ chunk values in transmission order, shape (columns, chunks_per_column) """
        return matrix_to_chunks(matrix, spec_for(version, self.band))

    def cycle(self, chunks, spec, amplitude, sample_rate=config.SAMPLING_RATE):
        """ samples of one start marker -> data -> end marker -> gap cycle """
        samps_lst = [tone(spec.start_marker_freq, spec.marker_duration, amplitude, sample_rate)]
        for column in chunks:
            for val in column:
                samps_lst.append(tone(chunk_to_frequency(int(val), spec), spec.chunk_duration,
                                      amplitude, sample_rate))
        samps_lst.append(tone(spec.end_marker_freq, spec.marker_duration, amplitude, sample_rate))
        samps_lst.append(silence(spec.gap_duration, sample_rate))
        return np.concatenate(samps_lst)

    def control_signal(self, matrix, version, cycles, amplitude, sample_rate=config.SAMPLING_RATE):
        spec = spec_for(version, self.band)
        one_cycle = self.cycle(self.chunk_sequence(matrix, version), spec, amplitude, sample_rate)
        return np.tile(one_cycle, cycles)

    def encode(self, carrier, matrix, version, cycles=config.DEFAULT_CYCLES,
               sample_rate=config.SAMPLING_RATE, stereo=False):
        """
        Mix `cycles` repetitions of the framed matrix into channel 0 of carrier.

        carrier is (n,) or (n, channels). With stereo=True a mono carrier is
        duplicated to two channels and only channel 0 carries the signal. The
        output is max(len(carrier), len(control)) samples long; the carrier
        itself is left untouched.
        """
        spec = spec_for(version, self.band)
        spec.check_sample_rate(sample_rate)
        if int(cycles) < 1:
            raise InvalidInput('at least one cycle is required', cycles=cycles)
        carrier = np.asarray(carrier, dtype=np.float64)
        if carrier.ndim not in (1, 2) or carrier.size == 0:
            raise InvalidInput('carrier must be a non-empty (n,) or (n, channels) array',
                               shape=carrier.shape)
        if not np.all(np.isfinite(carrier)):
            raise InvalidInput('carrier contains NaN or infinite samples')
        require_full_cycle(carrier.shape[0], spec, sample_rate)
        matrix_to_chunks(matrix, spec) # validates the shape before synthesis

        if carrier.ndim == 1:
            carrier = carrier[:, None]
            if stereo:
                carrier = np.repeat(carrier, 2, axis=1)
        amplitude = self.embed_amplitude(carrier[:, 0])
        control = self.control_signal(matrix, version, int(cycles), amplitude, sample_rate)
        logger.debug('version %d, %d cycles, amplitude %.4f, %d control samples',
                     version, cycles, amplitude, control.size)

        length = max(carrier.shape[0], control.size)
        out = np.zeros((length, carrier.shape[1]))
        out[:carrier.shape[0]] = carrier
        out[:control.size, 0] += control
        if out.shape[1] == 1:
            return out[:, 0]
        return out


def encode_text(carrier, sample_rate, text, version=1, cycles=config.DEFAULT_CYCLES,
                band=config.DEFAULT_BAND, stereo=False, codec=None):
    """ text => QR matrix => carrier with the embedded cycles """
    spec = spec_for(version, band)
    spec.check_sample_rate(sample_rate)
    require_full_cycle(np.shape(carrier)[0], spec, sample_rate)
    codec = codec or QRCodec()
    matrix = codec.encode(text, version)
    return FrameEncoder(band).encode(carrier, matrix, version, cycles, sample_rate, stereo)


def main(argv=None):
    parser = argparse.ArgumentParser(description='hide a text payload in an audio file')
    parser.add_argument('message', help='text to embed, or a path when -f is given')
    parser.add_argument('carrier', help='input .wav or .ui67')
    parser.add_argument('output', help='output .wav or .ui67')
    parser.add_argument('-f', '--from-file', action='store_true', help='read the message from a file')
    parser.add_argument('-v', '--version', type=int, default=1)
    parser.add_argument('-c', '--cycles', type=int, default=config.DEFAULT_CYCLES)
    parser.add_argument('-b', '--band', default=config.DEFAULT_BAND, choices=sorted(config.BANDS))
    parser.add_argument('--stereo', action='store_true', help='duplicate a mono carrier to two channels')
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if config.DEBUG else logging.INFO)

    message = args.message
    if args.from_file:
        with open(args.message, 'r', encoding='utf-8') as f:
            message = f.read()

    try:
        carrier, fs = read_audio(args.carrier)
        mixed = encode_text(carrier, fs, message, args.version, args.cycles, args.band, args.stereo)
        write_audio(args.output, mixed, fs)
    except SoundQRError as e:
        print('error [{}]: {}'.format(e.kind, e), file=sys.stderr)
        return 1
    print('embedded {} chars as version {} x{} cycles -> {}'.format(
        len(message), args.version, args.cycles, args.output))
    return 0


if __name__ == '__main__':
    sys.exit(main())
