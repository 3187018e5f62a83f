#!/usr/bin/env python3
"""
Verification script to check that the calibration engine can run here.

Checks the third-party functions the engine calls, not just that the
packages import, then runs one tiny calibration end to end.
"""

import importlib
import sys

# (module, attribute, what it is used for)
REQUIRED_FEATURES = [
    ("numpy.linalg", "eigh", "homography fit"),
    ("cv2", "calcHist", "lighting histogram"),
    ("cv2", "magnitude", "shadow gradients"),
    ("yaml", "safe_load", "config loading"),
    ("websockets", "serve", "calibration server"),
]


def check_feature(module_name, attribute, purpose):
    """Check that module_name.attribute exists"""
    label = f"{module_name}.{attribute} ({purpose})"
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        print(f"✗ {label} - FAILED: {e}")
        return False
    if not hasattr(module, attribute):
        print(f"✗ {label} - MISSING")
        return False
    print(f"✓ {label} - OK")
    return True


def check_calibration_smoke():
    """Fit a homography from four exact points and build a lighting histogram"""
    try:
        import numpy as np
        from proctor_calibration.calibration import (
            EnvironmentCalibrator,
            GazeCalibrator,
            GazeSample,
        )

        gaze = GazeCalibrator()
        for x, y in [(0, 0), (100, 0), (100, 100), (0, 100)]:
            gaze.add_point(GazeSample(screen_point=(x, y), gaze_point=(x + 2, y + 1), confidence=0.9))
        fitted = gaze.calculate_homography()

        image = np.full((8, 8, 4), 128, dtype=np.uint8)
        histogram = EnvironmentCalibrator().analyze_lighting_histogram(image)
        ok = fitted and abs(sum(histogram) - 1.0) < 1e-5
    except Exception as e:
        print(f"✗ calibration smoke test - FAILED: {e}")
        return False

    print(f"{'✓' if ok else '✗'} calibration smoke test - {'OK' if ok else 'FAILED'}")
    return ok


def main():
    """Check all required dependencies"""
    print("Checking Proctor Calibration Dependencies...")
    print("=" * 50)

    print(f"Python: {sys.version.split()[0]}")
    print()

    print("Required:")
    results = [check_feature(*feature) for feature in REQUIRED_FEATURES]

    print()
    print("Engine:")
    if all(results):
        results.append(check_calibration_smoke())
    else:
        print("- skipped (missing dependencies)")

    print()
    print("Optional:")
    check_feature("pytest", "main", "test suite")

    print("=" * 50)

    if all(results):
        print("\n✓ Calibration engine ready!")
        print("\nRun WebSocket server:")
        print("  python -m proctor_calibration.server.run_server")
        print("\nRun tests:")
        print("  pytest")
        return 0

    print("\n✗ Missing required dependencies.")
    print("Install with:")
    print("  pip install -e .")
    print("\nOr with the test tools:")
    print("  pip install -e '.[test]'")
    return 1

if __name__ == "__main__":
    sys.exit(main())
