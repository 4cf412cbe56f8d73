""" QR bit-matrix codec: qrcode builds matrices, OpenCV reads them back """
import logging
import numpy as np
import cv2
import qrcode
from qrcode.constants import ERROR_CORRECT_L, ERROR_CORRECT_M, ERROR_CORRECT_Q, ERROR_CORRECT_H
from qrcode.exceptions import DataOverflowError
import config
from errors import InvalidInput
from plan import spec_for

logger = logging.getLogger(__name__)

_EC_LEVELS = {'L': ERROR_CORRECT_L, 'M': ERROR_CORRECT_M, 'Q': ERROR_CORRECT_Q, 'H': ERROR_CORRECT_H}


def function_patterns(version):
    """
    Modules every QR code of this version shares, independent of payload and mask.

    Returns (mask, modules): finders with their light separators, both timing
    lines, the dark module and, from version 2 on, the single alignment
    pattern. Format information depends on the mask and is left out.
    """
    size = spec_for(version).matrix_size
    mask = np.zeros((size, size), dtype=bool)
    modules = np.zeros((size, size), dtype=bool)

    finder = np.maximum(*np.abs(np.mgrid[-3:4, -3:4])) != 2
    for r, c in ((0, 0), (0, size - 7), (size - 7, 0)):
        mask[max(r - 1, 0):r + 8, max(c - 1, 0):c + 8] = True
        modules[r:r + 7, c:c + 7] = finder

    idx = np.arange(8, size - 8)
    mask[6, idx] = True
    modules[6, idx] = idx % 2 == 0
    mask[idx, 6] = True
    modules[idx, 6] = idx % 2 == 0

    mask[size - 8, 8] = True
    modules[size - 8, 8] = True

    if version > 1:
        centre = size - 7
        mask[centre - 2:centre + 3, centre - 2:centre + 3] = True
        modules[centre - 2:centre + 3, centre - 2:centre + 3] = \
            np.maximum(*np.abs(np.mgrid[-2:3, -2:3])) != 1
    return mask, modules


def restore_function_patterns(matrix, version):
    """ copy of matrix with the fixed modules rewritten => (matrix, number of modules changed) """
    mask, modules = function_patterns(version)
    matrix = np.array(matrix, dtype=bool)
    changed = int(np.count_nonzero(matrix[mask] != modules[mask]))
    matrix[mask] = modules[mask]
    return matrix, changed


def rasterize(matrix, scale=config.QR_SCALES[0], quiet_zone=config.QR_QUIET_ZONE):
    """ draw the matrix as a white-background greyscale image with a quiet-zone border """
    matrix = np.asarray(matrix, dtype=bool)
    modules = np.pad(matrix, quiet_zone, mode='constant', constant_values=False)
    img = np.where(modules, 0, 255).astype(np.uint8)
    return np.kron(img, np.ones((scale, scale), dtype=np.uint8))


class QRCodec:
    """ QR encoder and decoder for square boolean matrices """
    def __init__(self, error_correction=config.QR_ERROR_CORRECTION, scales=None):
        if error_correction not in _EC_LEVELS:
            raise InvalidInput('unknown error correction level {!r}'.format(error_correction))
        self.error_correction = error_correction
        self.scales = list(scales or config.QR_SCALES)
        self._detector = cv2.QRCodeDetector()

    def encode(self, text, version):
        """ text => matrix of exactly the given version, True is a dark module """
        spec = spec_for(version)
        qr = qrcode.QRCode(version=spec.version, error_correction=_EC_LEVELS[self.error_correction],
                           border=0)
        qr.add_data(text)
        try:
            qr.make(fit=False)
        except DataOverflowError:
            raise InvalidInput('text does not fit a version {} QR code at level {}'.format(
                version, self.error_correction), length=len(text), version=version) from None
        matrix = np.array(qr.get_matrix(), dtype=bool)
        if matrix.shape != (spec.matrix_size, spec.matrix_size):
            raise InvalidInput('QR matrix is {}, expected {}x{}'.format(
                matrix.shape, spec.matrix_size, spec.matrix_size))
        return matrix

    def decode(self, matrix):
        """ matrix => text, or None when no reader attempt succeeds """
        matrix = np.asarray(matrix, dtype=bool)
        if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1] or matrix.size == 0:
            return None
        for scale in self.scales:
            img = rasterize(matrix, scale)
            try:
                text, points, _ = self._detector.detectAndDecode(img)
            except cv2.error as e:
                logger.debug('QR reader failed at scale %d: %s', scale, e)
                continue
            if text:
                return text
            logger.debug('QR reader found nothing at scale %d', scale)
        return None
