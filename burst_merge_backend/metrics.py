import numpy as np
from typing import Dict, Any, Optional


def residual_variance(estimate: np.ndarray, truth: np.ndarray, margin: int = 0) -> float:
    """Variance of (estimate - truth), optionally ignoring a border margin."""
    est = np.asarray(estimate, dtype=np.float64)
    ref = np.asarray(truth, dtype=np.float64)
    if est.shape != ref.shape:
        est = est.reshape(ref.shape)
    if margin > 0:
        est = est[margin:-margin, margin:-margin]
        ref = ref[margin:-margin, margin:-margin]
    return float(np.var(est - ref))


def snr(estimate: np.ndarray, truth: np.ndarray, margin: int = 0) -> float:
    """
    Variance-based SNR against a known ground truth.

    Formula:
        SNR = var(truth) / var(estimate - truth)
    """
    ref = np.asarray(truth, dtype=np.float64)
    sig = float(np.var(ref[margin:-margin, margin:-margin] if margin > 0 else ref))
    res = residual_variance(estimate, truth, margin)
    if res < 1e-30:
        return float('inf')
    return sig / res


def merge_quality_report(
    reference: np.ndarray,
    merged: np.ndarray,
    truth: np.ndarray,
    margin: int = 0,
) -> Dict[str, Any]:
    """SNR of the noisy reference and of the merged frame, plus their ratio."""
    snr_ref = snr(reference, truth, margin)
    snr_merged = snr(merged, truth, margin)
    gain: Optional[float] = snr_merged / snr_ref if snr_ref > 0 else None
    return {
        'snr_reference': snr_ref,
        'snr_merged': snr_merged,
        'snr_gain': gain,
        'residual_variance_reference': residual_variance(reference, truth, margin),
        'residual_variance_merged': residual_variance(merged, truth, margin),
    }
