"""
Live decoding: a capture source feeds a rolling buffer, a timer thread
re-runs the decoder over it until a payload is found or the session stops.
"""
import logging
import threading
from collections import deque
import numpy as np
import config
from errors import DecodeError, DeviceAccessError, SessionStopped
from receive import FrameDecoder
from tones import samples_for

logger = logging.getLogger(__name__)


class PyAudioSource:
    """ microphone input through PortAudio, delivering float samples to a callback """
    def __init__(self, sample_rate=config.SAMPLING_RATE, frames_per_buffer=config.FRAMES_PER_BUFFER,
                 device_index=None):
        self.sample_rate = sample_rate
        self.frames_per_buffer = frames_per_buffer
        self.device_index = device_index
        self._pa = None
        self._stream = None

    def open(self, callback):
        """ start capturing; callback(samples) returns False to end the stream """
        try:
            import pyaudio
        except ImportError as e:
            raise DeviceAccessError('pyaudio is not installed, live capture needs the "live" extra') from e

        def on_buffer(in_data, frame_count, time_info, status):
            samples = np.frombuffer(in_data, dtype=np.int16) / 32768.
            if callback(samples) is False:
                return (None, pyaudio.paComplete)
            return (None, pyaudio.paContinue)

        try:
            self._pa = pyaudio.PyAudio()
            self._stream = self._pa.open(
                format=pyaudio.paInt16,
                channels=1,
                rate=int(self.sample_rate),
                input=True,
                input_device_index=self.device_index,
                frames_per_buffer=self.frames_per_buffer,
                stream_callback=on_buffer,
            )
            self._stream.start_stream()
        except (OSError, ValueError) as e:
            self.close()
            raise DeviceAccessError('could not open capture device: {}'.format(e),
                                    device_index=self.device_index) from e

    def close(self):
        try:
            if self._stream is not None:
                self._stream.stop_stream()
                self._stream.close()
        finally:
            self._stream = None
            if self._pa is not None:
                self._pa.terminate()
                self._pa = None


class LiveSession:
    """
    Rolling-buffer decoder driven by a capture source.

    Every `interval` seconds the timer thread snapshots the buffer and runs one
    decode pass. A pass never overlaps another: a trigger arriving while one
    runs is dropped and counted in `dropped`. The first successful pass stops
    the session and hands its DecodeResult to on_decoded. stop() is idempotent
    and always releases the source.
    """
    def __init__(self, source, on_decoded, decoder=None, sample_rate=config.SAMPLING_RATE,
                 interval=config.LIVE_INTERVAL, buffer_seconds=config.LIVE_BUFFER_SECONDS,
                 min_seconds=config.LIVE_MIN_SECONDS, timeout_ms=config.LIVE_TIMEOUT_MS):
        self.source = source
        self.on_decoded = on_decoded
        self.decoder = decoder or FrameDecoder()
        self.sample_rate = sample_rate
        self.interval = interval
        self.min_samples = samples_for(min_seconds, sample_rate)
        self.timeout_ms = timeout_ms
        self.buffer = deque(maxlen=samples_for(buffer_seconds, sample_rate))
        self.stopped = threading.Event()
        self.passes = 0
        self.dropped = 0
        self.result = None
        self.error = None
        self._buffer_lock = threading.Lock()
        self._busy = threading.Lock()
        self._timer = None

    def feed(self, samples):
        """ capture callback: append samples, False once the session is stopped """
        if self.stopped.is_set():
            return False
        samples = np.asarray(samples, dtype=np.float64)
        if samples.ndim == 2:
            samples = samples[:, 0]
        with self._buffer_lock:
            self.buffer.extend(samples)
        return True

    def snapshot(self):
        with self._buffer_lock:
            return np.array(self.buffer, dtype=np.float64)

    def start(self):
        if self.stopped.is_set():
            raise SessionStopped('a stopped session cannot be restarted')
        try:
            self.source.open(self.feed)
        except Exception:
            self.stop()
            raise
        self._timer = threading.Thread(target=self._run, name='soundqr-live', daemon=True)
        self._timer.start()
        logger.info('listening, %.1fs buffer, pass every %.2fs',
                    self.buffer.maxlen / self.sample_rate, self.interval)

    def _run(self):
        try:
            while not self.stopped.wait(self.interval):
                self.trigger()
        except Exception as e:
            logger.exception('live decoding failed')
            self.error = e
        finally:
            self.stop()

    def trigger(self):
        """ one decode pass, or None when stopped, busy, short of audio or unsuccessful """
        if self.stopped.is_set():
            return None
        if not self._busy.acquire(blocking=False):
            self.dropped += 1
            logger.debug('pass still running, trigger dropped (%d so far)', self.dropped)
            return None
        try:
            return self._decode_pass()
        finally:
            self._busy.release()

    def _decode_pass(self):
        audio = self.snapshot()
        if audio.size < self.min_samples:
            return None
        self.passes += 1
        try:
            result = self.decoder.decode(audio, self.sample_rate, self.timeout_ms)
        except DecodeError as e:
            logger.debug('pass %d: %s', self.passes, e)
            return None
        if self.stopped.is_set():
            return None
        self.result = result
        self.stop()
        self.on_decoded(result)
        return result

    def stop(self):
        self.stopped.set()
        try:
            self.source.close()
        finally:
            self._join()

    def wait(self, timeout=None):
        """ block until the session has stopped and released its source; False on timeout """
        if not self.stopped.wait(timeout):
            return False
        self._join(timeout)
        return True

    def _join(self, timeout=None):
        timer = self._timer
        if timer is not None and timer is not threading.current_thread():
            timer.join(timeout)


def run_live(duration=None, band=config.DEFAULT_BAND, device_index=None,
             sample_rate=config.SAMPLING_RATE):
    """ listen on the microphone until a payload decodes or duration seconds pass """
    decoded = []
    source = PyAudioSource(sample_rate, device_index=device_index)
    session = LiveSession(source, decoded.append, FrameDecoder(band), sample_rate)
    session.start()
    try:
        session.wait(duration)
    except KeyboardInterrupt:
        logger.info('interrupted')
    finally:
        session.stop()
    if session.error is not None:
        raise session.error
    return decoded[0] if decoded else None
