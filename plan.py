"""
frequency plan: per-version protocol constants and the chunk <-> tone mapping

Column packing (shared by transmitter and receiver): a column is read top to
bottom, zero-padded at the tail to a multiple of chunk_bits, and cut into
chunk_bits groups. Each group is read MSB-first, so the topmost row of a group
is the most significant bit of its chunk value.
"""
import math
from dataclasses import dataclass
import numpy as np
import config
from errors import InvalidInput, UnsupportedVersion
from tones import samples_for


@dataclass(frozen=True)
class VersionSpec:
    version: int
    band: str
    start_marker_freq: float
    end_marker_freq: float
    data_grid_base: float
    chunk_bits: int = config.CHUNK_BITS
    data_grid_step: float = config.DATA_GRID_STEP
    data_grid_bins: int = config.DATA_GRID_BINS
    chunk_duration_ms: int = config.CHUNK_DURATION_MS
    marker_duration_ms: int = config.MARKER_DURATION_MS
    gap_duration_ms: int = config.GAP_DURATION_MS

    def __post_init__(self):
        if self.data_grid_bins != 2 ** self.chunk_bits:
            raise ValueError('data grid must hold exactly 2**chunk_bits tones')
        if self.data_grid_step < 2 * config.FREQ_TOLERANCE:
            raise ValueError('grid step {} Hz too small for +-{} Hz tolerance'.format(
                self.data_grid_step, config.FREQ_TOLERANCE))
        lo = self.data_grid_base - config.FREQ_TOLERANCE
        hi = self.data_grid_top + config.FREQ_TOLERANCE
        for marker in (self.start_marker_freq, self.end_marker_freq):
            if lo <= marker <= hi:
                raise ValueError('marker {} Hz collides with the data grid'.format(marker))

    @property
    def matrix_size(self):
        return 21 + 4 * (self.version - 1)

    @property
    def chunks_per_column(self):
        return math.ceil(self.matrix_size / self.chunk_bits)

    @property
    def padded_column_bits(self):
        return self.chunks_per_column * self.chunk_bits

    @property
    def data_grid_top(self):
        return self.data_grid_base + (self.data_grid_bins - 1) * self.data_grid_step

    @property
    def grid(self):
        """ all data tone frequencies, index == chunk value """
        return self.data_grid_base + np.arange(self.data_grid_bins) * self.data_grid_step

    @property
    def chunk_duration(self):
        return self.chunk_duration_ms / 1000.

    @property
    def marker_duration(self):
        return self.marker_duration_ms / 1000.

    @property
    def gap_duration(self):
        return self.gap_duration_ms / 1000.

    # sample counts, all framing positions derive from these
    def marker_samples(self, sample_rate):
        return samples_for(self.marker_duration, sample_rate)

    def chunk_samples(self, sample_rate):
        return samples_for(self.chunk_duration, sample_rate)

    def gap_samples(self, sample_rate):
        return samples_for(self.gap_duration, sample_rate)

    def data_samples(self, sample_rate):
        return self.matrix_size * self.chunks_per_column * self.chunk_samples(sample_rate)

    def cycle_samples(self, sample_rate):
        return (2 * self.marker_samples(sample_rate) + self.data_samples(sample_rate) +
                self.gap_samples(sample_rate))

    def cycle_duration(self, sample_rate=config.SAMPLING_RATE):
        return self.cycle_samples(sample_rate) / sample_rate

    def chunk_offset(self, column, chunk, sample_rate):
        """ sample offset of a chunk tone, relative to the start of its cycle """
        index = column * self.chunks_per_column + chunk
        return self.marker_samples(sample_rate) + index * self.chunk_samples(sample_rate)

    def end_marker_offset(self, sample_rate):
        return self.marker_samples(sample_rate) + self.data_samples(sample_rate)

    def check_sample_rate(self, sample_rate):
        highest = max(self.data_grid_top, self.start_marker_freq, self.end_marker_freq)
        if sample_rate <= 0 or highest >= sample_rate / 2:
            raise InvalidInput('sample rate too low for the {} band'.format(self.band),
                               sample_rate=sample_rate, highest_freq=highest)


def _build_specs():
    specs = {}
    for band, preset in config.BANDS.items():
        for v in config.VERSIONS:
            specs[band, v] = VersionSpec(version=v, band=band,
                                         start_marker_freq=float(preset['start_markers'][v]),
                                         end_marker_freq=float(preset['end_markers'][v]),
                                         data_grid_base=float(preset['data_grid_base']))
    return specs

_SPECS = _build_specs()


def spec_for(version, band=config.DEFAULT_BAND):
    if band not in config.BANDS:
        raise InvalidInput('unknown band {!r}'.format(band), band=band)
    try:
        return _SPECS[band, int(version)]
    except (KeyError, TypeError, ValueError):
        raise UnsupportedVersion('unsupported QR version {!r}'.format(version),
                                 version=version) from None


def all_specs(band=config.DEFAULT_BAND):
    return [spec_for(v, band) for v in config.VERSIONS]


def chunk_to_frequency(chunk, spec):
    if not 0 <= chunk < spec.data_grid_bins:
        raise InvalidInput('chunk value {} out of range (0-{})'.format(chunk, spec.data_grid_bins - 1),
                           chunk=chunk)
    return spec.data_grid_base + chunk * spec.data_grid_step


def frequency_to_chunk(frequency, spec, tolerance=config.FREQ_TOLERANCE):
    """ nearest grid point, None when the frequency is off-grid by more than tolerance """
    chunk = int(round((frequency - spec.data_grid_base) / spec.data_grid_step))
    chunk = min(max(chunk, 0), spec.data_grid_bins - 1)
    if abs(frequency - chunk_to_frequency(chunk, spec)) > tolerance:
        return None
    return chunk


def column_to_chunks(bits, spec):
    """ pack one matrix column (top to bottom) into chunk values """
    bits = [1 if b else 0 for b in bits]
    if len(bits) != spec.matrix_size:
        raise InvalidInput('column has {} bits, expected {}'.format(len(bits), spec.matrix_size))
    bits.extend([0] * (spec.padded_column_bits - len(bits)))
    chunks = []
    for i in range(0, len(bits), spec.chunk_bits):
        val = 0
        for b in bits[i:i + spec.chunk_bits]:
            val <<= 1
            val += b
        chunks.append(val)
    return chunks


def chunks_to_column(chunks, spec):
    """ inverse of column_to_chunks: (column bits, padding_ok) """
    bits = []
    for val in chunks:
        digit = 1 << (spec.chunk_bits - 1)
        while digit:
            bits.append(1 if val & digit else 0)
            digit >>= 1
    padding = bits[spec.matrix_size:]
    column = np.array(bits[:spec.matrix_size], dtype=bool)
    return column, not any(padding)


def matrix_to_chunks(matrix, spec):
    """ column-major chunk grid, shape (matrix_size, chunks_per_column) """
    matrix = np.asarray(matrix, dtype=bool)
    if matrix.shape != (spec.matrix_size, spec.matrix_size):
        raise InvalidInput('matrix is {}, version {} needs {}x{}'.format(
            matrix.shape, spec.version, spec.matrix_size, spec.matrix_size))
    return np.array([column_to_chunks(matrix[:, col], spec) for col in range(spec.matrix_size)],
                    dtype=np.int64)
