""" failure taxonomy: every error carries a kind and a diagnostics dict """


class SoundQRError(Exception):
    """ base class, callers branch on the subclass or on .kind """
    kind = 'error'

    def __init__(self, message, **diagnostics):
        super().__init__(message)
        self.diagnostics = diagnostics

    def __str__(self):
        msg = super().__str__()
        if self.diagnostics:
            details = ', '.join('{}={}'.format(k, v) for k, v in sorted(self.diagnostics.items())
                                if k != 'candidates')
            if details:
                return '{} ({})'.format(msg, details)
        return msg


class UnsupportedVersion(SoundQRError, ValueError):
    kind = 'unsupported_version'


class InvalidInput(SoundQRError, ValueError):
    kind = 'invalid_input'


class InsufficientCarrierDuration(SoundQRError, ValueError):
    kind = 'insufficient_carrier_duration'


class DeviceAccessError(SoundQRError):
    """ capture device could not be opened or failed while running """
    kind = 'device_access'


class SessionStopped(SoundQRError, RuntimeError):
    """ a live session was started again after stop() """
    kind = 'session_stopped'


class DecodeError(SoundQRError):
    """ base for failures of a decode attempt """
    kind = 'decode'

    @property
    def candidates_examined(self):
        return self.diagnostics.get('candidates_examined', 0)

    @property
    def max_strength(self):
        return self.diagnostics.get('max_strength', 0.0)


class NoCycleDetected(DecodeError):
    kind = 'no_cycle_detected'


class CycleCorrupted(DecodeError):
    kind = 'cycle_corrupted'

    @property
    def corruption_rate(self):
        return self.diagnostics.get('corruption_rate', 1.0)


class ExternalDecodeFailure(DecodeError):
    """ matrix was rebuilt but the QR reader rejected it """
    kind = 'external_decode_failure'


class Timeout(DecodeError):
    kind = 'timeout'

    @property
    def elapsed(self):
        return self.diagnostics.get('elapsed', 0.0)

    @property
    def candidates(self):
        return self.diagnostics.get('candidates', [])
