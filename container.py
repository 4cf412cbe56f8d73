"""
Sample buffer I/O: WAV files through scipy, and the UI67 container.

UI67 layout (little-endian): a fixed 40-byte header
    magic 4s | version u16 | total length u64 | video codec 4s | audio codec 4s |
    sample rate u32 | channels u8 | bit depth u8 | duration ms u64 | reserved 4s
followed by chunk records  id 4s | length u64 | data.  'AUDO' holds interleaved
int16 PCM, 'END ' (zero length) terminates.
"""
import os.path
import struct
from collections import namedtuple
import numpy as np
from scipy.io import wavfile
import config
from errors import InvalidInput

HEADER = struct.Struct('<4sHQ4s4sIBBQ4s')
CHUNK_HEADER = struct.Struct('<4sQ')
AUDIO_CHUNK = b'AUDO'
END_CHUNK = b'END '

ContainerHeader = namedtuple('ContainerHeader', [
    'magic', 'version', 'total_length', 'video_codec', 'audio_codec',
    'sample_rate', 'channels', 'bit_depth', 'duration_ms', 'reserved'])


def to_float_audio(audio):
    """ integer PCM => float in [-1, 1), float input passes through as float64 """
    audio = np.asarray(audio)
    if np.issubdtype(audio.dtype, np.integer):
        info = np.iinfo(audio.dtype)
        if info.min == 0: # unsigned, e.g. 8-bit wav
            return (audio.astype(np.float64) - (info.max + 1) / 2) / ((info.max + 1) / 2)
        return audio.astype(np.float64) / -info.min
    return audio.astype(np.float64)


def to_pcm16(samples):
    samples = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    return np.where(samples < 0, samples * 0x8000, samples * 0x7FFF).astype('<i2')


def pack_container(samples, sample_rate):
    """ float samples, (n,) or (n, channels) => UI67 bytes """
    samples = np.asarray(samples)
    channels = 1 if samples.ndim == 1 else samples.shape[1]
    pcm = to_pcm16(samples).tobytes()
    total = HEADER.size + CHUNK_HEADER.size + len(pcm) + CHUNK_HEADER.size
    frames = samples.shape[0]
    header = HEADER.pack(config.CONTAINER_MAGIC, config.CONTAINER_VERSION, total, b'NONE', b'PCM ',
                         int(sample_rate), channels, 16, int(frames * 1000 // sample_rate), b'\0' * 4)
    return b''.join([header, CHUNK_HEADER.pack(AUDIO_CHUNK, len(pcm)), pcm,
                     CHUNK_HEADER.pack(END_CHUNK, 0)])


def read_header(data):
    if len(data) < HEADER.size:
        raise InvalidInput('container shorter than its header', length=len(data))
    header = ContainerHeader(*HEADER.unpack_from(data, 0))
    if header.magic != config.CONTAINER_MAGIC:
        raise InvalidInput('not a UI67 container', magic=header.magic)
    if header.channels < 1 or header.sample_rate < 1:
        raise InvalidInput('container header is inconsistent',
                           channels=header.channels, sample_rate=header.sample_rate)
    if header.bit_depth != 16:
        raise InvalidInput('unsupported bit depth {}'.format(header.bit_depth))
    return header


def unpack_container(data):
    """ UI67 bytes => (float samples, sample rate) """
    data = bytes(data)
    header = read_header(data)
    cursor = HEADER.size
    while cursor + CHUNK_HEADER.size <= len(data):
        chunk_id, length = CHUNK_HEADER.unpack_from(data, cursor)
        cursor += CHUNK_HEADER.size
        if chunk_id == END_CHUNK:
            break
        if cursor + length > len(data):
            raise InvalidInput('chunk {!r} runs past the end of the container'.format(chunk_id),
                               length=length, available=len(data) - cursor)
        if chunk_id == AUDIO_CHUNK:
            if length % (2 * header.channels):
                raise InvalidInput('audio chunk is not a whole number of frames', length=length)
            pcm = np.frombuffer(data, dtype='<i2', count=length // 2, offset=cursor)
            samples = to_float_audio(pcm.astype(np.int16))
            if header.channels > 1:
                samples = samples.reshape(-1, header.channels)
            return samples, header.sample_rate
        cursor += length
    raise InvalidInput('no audio chunk found')


def read_audio(path):
    """ load a .wav or .ui67 file => (float samples, sample rate) """
    if os.path.splitext(path)[1].lower() == '.ui67':
        with open(path, 'rb') as f:
            return unpack_container(f.read())
    try:
        fs, audio = wavfile.read(path)
    except ValueError as e:
        raise InvalidInput('could not read {}: {}'.format(path, e)) from e
    return to_float_audio(audio), fs


def write_audio(path, samples, sample_rate):
    if os.path.splitext(path)[1].lower() == '.ui67':
        with open(path, 'wb') as f:
            f.write(pack_container(samples, sample_rate))
    else:
        wavfile.write(path, int(sample_rate), to_pcm16(samples))
