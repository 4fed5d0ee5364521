"""
Crystal Lattice Indexing Engine (GPU Implementation)

PyTorch counterpart of the CPU engine plus the host memory pinning used by
the indexer facade.

Key Features:
- Page-locking of host buffers through the CUDA runtime for asynchronous
  device transfers
- Batched quaternion to rotation matrix conversion on the device
- Trimmed orientation scoring in chunks on the device
"""

import logging
import mmap

import numpy as np
import torch

from indexer_cpu import CpuEngine

logger = logging.getLogger(__name__)


# ==============================================================================
# Host Memory Pinning
# ==============================================================================

PAGE_SIZE = mmap.PAGESIZE


def page_aligned_zeros(shape, dtype=np.float64):
    """Zero-filled array starting on a page boundary and owning whole pages.

    Host registration works on pages, so buffers pinned side by side must not
    share one. The array is a view into a padded byte buffer.

    Args:
        shape: Array shape
        dtype: numpy data type, structured types included

    Returns:
        C-contiguous array of the given shape and dtype
    """
    dtype = np.dtype(dtype)
    nbytes = int(np.prod(shape)) * dtype.itemsize
    padded = -(-max(nbytes, 1) // PAGE_SIZE) * PAGE_SIZE
    raw = np.zeros(padded + PAGE_SIZE, dtype=np.uint8)
    start = -raw.ctypes.data % PAGE_SIZE
    return raw[start:start + nbytes].view(dtype).reshape(shape)


class MemoryPin:
    """Scoped registration of a host array for asynchronous device access.

    Registration happens when CUDA is available; otherwise the pin holds the
    array without registering it. The registration is released exactly once,
    by release(), by leaving the context, or when the pin is collected.

    Args:
        array: C-contiguous numpy array

    Raises:
        ValueError: If the array is not C-contiguous
        RuntimeError: If the CUDA runtime refuses the registration
    """

    def __init__(self, array):
        self._ptr = None
        if not array.flags.c_contiguous:
            raise ValueError("only contiguous arrays can be pinned")
        self._array = array
        if array.nbytes > 0 and torch.cuda.is_available():
            ptr = array.ctypes.data
            err = torch.cuda.cudart().cudaHostRegister(ptr, array.nbytes, 0)
            if int(err) != 0:
                raise RuntimeError(f"unable to pin {array.nbytes} bytes of host memory: {err}")
            self._ptr = ptr
            logger.debug("pinned %d bytes at %#x", array.nbytes, ptr)

    @property
    def pinned(self):
        return self._ptr is not None

    def release(self):
        if self._ptr is None:
            return
        ptr, self._ptr = self._ptr, None
        err = torch.cuda.cudart().cudaHostUnregister(ptr)
        if int(err) != 0:
            logger.warning("unable to unpin host memory at %#x: %s", ptr, err)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.release()
        return False

    def __del__(self):
        self.release()


# ==============================================================================
# Quaternion Operations (PyTorch)
# ==============================================================================

def quat_to_R_batch_torch(quats, eps=1e-12):
    """Convert batch of quaternions to rotation matrices on the device.

    Args:
        quats: Quaternions of shape (B, 4) or (4,) in (w, x, y, z) format
        eps: Small value to prevent division by zero

    Returns:
        Rotation matrices of shape (B, 3, 3)

    Raises:
        ValueError: If input shape is invalid
    """
    q = quats
    if q.ndim == 1:
        q = q[None, :]
    if q.ndim != 2 or q.shape[1] != 4:
        raise ValueError(f"quat_to_R_batch_torch expects (B,4) or (4,), got {tuple(q.shape)}")

    q = q / (q.norm(dim=-1, keepdim=True) + eps)
    w, x, y, z = q.unbind(-1)

    rows = [
        torch.stack([1.0 - 2.0 * (y*y + z*z), 2.0 * (x*y - w*z), 2.0 * (x*z + w*y)], dim=-1),
        torch.stack([2.0 * (x*y + w*z), 1.0 - 2.0 * (x*x + z*z), 2.0 * (y*z - w*x)], dim=-1),
        torch.stack([2.0 * (x*z - w*y), 2.0 * (y*z + w*x), 1.0 - 2.0 * (x*x + y*y)], dim=-1),
    ]
    return torch.stack(rows, dim=1)


# ==============================================================================
# Scoring (PyTorch)
# ==============================================================================

def trimmed_score_batched_torch(quats, spots, cell_inv, triml, trimh,
                                device=None, dtype=torch.float64, batch_size=4096):
    """Device version of indexer_cpu.trimmed_score_batched.

    Args:
        quats: Array of shape (B, 4)
        spots: Spot coordinates of shape (N, 3)
        cell_inv: Inverse of the unrotated 3x3 cell
        triml, trimh: Clip range for fractional distances
        device: PyTorch device (default: cuda if available)
        dtype: PyTorch data type
        batch_size: Number of orientations scored at once

    Returns:
        numpy array of shape (B,)
    """
    if device is None:
        device = "cuda" if torch.cuda.is_available() else "cpu"
    q_t = torch.as_tensor(np.asarray(quats), device=device, dtype=dtype)
    S_t = torch.as_tensor(np.asarray(spots), device=device, dtype=dtype)
    Binv_t = torch.as_tensor(np.asarray(cell_inv), device=device, dtype=dtype)

    out = torch.empty(q_t.shape[0], device=device, dtype=dtype)
    for start in range(0, q_t.shape[0], batch_size):
        R = quat_to_R_batch_torch(q_t[start:start + batch_size])
        C = torch.matmul(S_t, torch.matmul(R, Binv_t))      # (b, N, 3)
        d = (C - torch.round(C)).abs().clamp(min=float(triml), max=float(trimh))
        out[start:start + batch_size] = d.sum(dim=(1, 2))
    return out.cpu().numpy().astype(np.float64)


# ==============================================================================
# Asynchronous Engine
# ==============================================================================

class TorchEngine(CpuEngine):
    """Orientation search engine scoring the orientation samples with PyTorch.

    Args:
        cpers: ConfigPersistent of the owning indexer
        device: PyTorch device (default: cuda if available)
        dtype: PyTorch data type for scoring
        batch_size: Orientations scored per device batch
        **kwargs: Passed to CpuEngine (seed, polish, maxiter, profile)
    """

    name = "torch"

    def __init__(self, cpers, device=None, dtype=torch.float64, batch_size=4096, **kwargs):
        if device is None:
            device = "cuda" if torch.cuda.is_available() else "cpu"
        self.device = device
        self.dtype = dtype
        self.batch_size = batch_size
        super().__init__(cpers, **kwargs)

    def score_samples(self, quats, spots, cell_inv, triml, trimh):
        return trimmed_score_batched_torch(
            quats, spots, cell_inv, triml, trimh,
            device=self.device, dtype=self.dtype, batch_size=self.batch_size,
        )
