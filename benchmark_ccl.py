import time

import numpy as np
import scipy.ndimage
from skimage.measure import label as sklabel

try:
    from ccl import regions
    from ccl.backend import xp as active_xp, GPU_ENABLED, to_host
except ImportError as e:
    print(f"Error importing from ccl: {e}")
    exit()

# ---- Configuration ----
N_ITERATIONS = 20
SIZES = [256, 512, 1024]
CONNECTIVITY = 4
SK_CONNECTIVITY = 1 if CONNECTIVITY == 4 else 2
STRUCTURE = scipy.ndimage.generate_binary_structure(2, SK_CONNECTIVITY)


def generate_image(size, mode, rng):
    if mode == "noise":
        return (rng.random((size, size)) > 0.9).astype(np.uint8)
    # blobs: upscaled coarse noise
    small_size = max(size // 64, 1)
    small_img = rng.integers(0, 2, (small_size, small_size), dtype=np.uint8)
    return np.kron(small_img, np.ones((size // small_size, size // small_size), dtype=np.uint8))


def synchronize():
    if GPU_ENABLED:
        active_xp.cuda.Stream.null.synchronize()


def time_call(func, runs):
    func()
    synchronize()
    start = time.perf_counter()
    for _ in range(runs):
        func()
    synchronize()
    return (time.perf_counter() - start) / runs * 1000


def verify_correctness(rng):
    print("--- VERIFICATION ---")
    for mode in ["noise", "blobs"]:
        img_np = generate_image(512, mode, rng)
        _, n_scipy = scipy.ndimage.label(img_np, structure=STRUCTURE)
        n_sk = int(sklabel(img_np, connectivity=SK_CONNECTIVITY).max())
        labels, n_ccl = regions.label(active_xp.asarray(img_np), connectivity=CONNECTIVITY)
        n_unique = len(np.unique(to_host(labels))) - 1
        status = "SUCCESS" if n_scipy == n_sk == n_ccl == n_unique else "FAILURE"
        print(f"[{mode.upper()}] scipy: {n_scipy} | skimage: {n_sk} | ccl: {n_ccl} -> {status}")
    print("")


def run_benchmark():
    backend_name = f"{active_xp.__name__} (GPU_ENABLED={GPU_ENABLED})"
    print(f"--- Starting Benchmark for ccl.regions.label ---")
    print(f"Using backend: {backend_name}")
    print(f"Number of iterations: {N_ITERATIONS}")

    rng = np.random.default_rng(0)
    verify_correctness(rng)

    print("--- BENCHMARK RESULTS (ms) ---")
    for mode in ["noise", "blobs"]:
        print(f"\n=== DATASET: {mode.upper()} ===")
        print(f"{'Size':<12} {'scipy':<12} {'skimage':<12} {'ccl':<12}")
        for size in SIZES:
            img_np = generate_image(size, mode, rng)
            img_xp = active_xp.asarray(img_np)

            scipy_time = time_call(lambda: scipy.ndimage.label(img_np, structure=STRUCTURE), N_ITERATIONS)
            sk_time = time_call(lambda: sklabel(img_np, connectivity=SK_CONNECTIVITY), N_ITERATIONS)
            ccl_time = time_call(lambda: regions.label(img_xp, connectivity=CONNECTIVITY), N_ITERATIONS)

            print(f"{size}x{size:<7} {scipy_time:<12.2f} {sk_time:<12.2f} {ccl_time:<12.2f}")


if __name__ == "__main__":
    run_benchmark()
