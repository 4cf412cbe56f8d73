import numpy as np
import pytest

import config
from qrcodec import QRCodec
from transmit import FrameEncoder, encode_text

FS = config.SAMPLING_RATE

# byte-mode capacity at error correction level M
BYTE_CAPACITY = {1: 14, 2: 26, 3: 42, 4: 62, 5: 84}


def noise(seconds, seed=0, sigma=0.005, fs=FS):
    rng = np.random.default_rng(seed)
    return rng.normal(0.0, sigma, int(round(seconds * fs)))


def payload(length):
    # lowercase letters only, keeps the QR encoder in byte mode
    letters = 'abcdefghijklmnopqrstuvwxyz'
    return ''.join(letters[(i * 7) % 26] for i in range(length))


def mix_cycles(carrier, spec, chunk_grids, fs=FS):
    """ carrier plus one cycle per chunk grid, back to back from sample 0 """
    encoder = FrameEncoder(spec.band)
    amplitude = encoder.embed_amplitude(carrier)
    control = np.concatenate([encoder.cycle(chunks, spec, amplitude, fs) for chunks in chunk_grids])
    assert control.size <= carrier.size
    out = np.array(carrier, dtype=np.float64)
    out[:control.size] += control
    return out


@pytest.fixture(scope='session')
def codec():
    return QRCodec()


@pytest.fixture(scope='session')
def hello_world(codec):
    """ 'Hello World' as version 1, three cycles, in 20 s of low-level noise """
    carrier = noise(20.0, seed=7)
    return encode_text(carrier, FS, 'Hello World', version=1, cycles=3, codec=codec)
