"""
Python client helper for the MPC bridge server.
Lets tools and tests drive the controller over HTTP.
"""

import requests
from typing import Dict, Optional, Sequence


class MPCBridgeClient:
    """Client for communicating with the MPC bridge server."""

    def __init__(self, base_url: str = "http://localhost:4567", timeout: float = 2.0):
        """
        Initialize MPC bridge client.

        Args:
            base_url: Base URL of the bridge server
            timeout: Request timeout (seconds); covers one MPC solve
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()

    @staticmethod
    def _build_telemetry(
        ptsx: Sequence[float],
        ptsy: Sequence[float],
        x: float,
        y: float,
        psi: float,
        speed: float,
        steering_angle: float,
        throttle: float,
    ) -> Dict:
        return {
            "ptsx": [float(v) for v in ptsx],
            "ptsy": [float(v) for v in ptsy],
            "x": float(x),
            "y": float(y),
            "psi": float(psi),
            "speed": float(speed),
            "steering_angle": float(steering_angle),
            "throttle": float(throttle),
        }

    def send_telemetry(self, **telemetry) -> Optional[Dict]:
        """
        Run one control tick on the server.

        Args:
            telemetry: Fields accepted by _build_telemetry

        Returns:
            Steer command dictionary, or None if the server is unavailable
        """
        payload = self._build_telemetry(**telemetry)
        try:
            response = self.session.post(
                f"{self.base_url}/api/telemetry", json=payload, timeout=self.timeout
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.Timeout:
            return None
        except requests.RequestException:
            return None

    def get_trajectory(self) -> Optional[Dict]:
        """Latest predicted trajectory, or None if unavailable."""
        try:
            response = self.session.get(f"{self.base_url}/api/trajectory", timeout=0.5)
            response.raise_for_status()
            return response.json()
        except requests.RequestException:
            return None

    def health_check(self) -> bool:
        """True if the bridge server answers its health endpoint."""
        try:
            response = self.session.get(f"{self.base_url}/api/health", timeout=1.0)
            return response.status_code == 200
        except requests.RequestException:
            return False

    def close(self):
        self.session.close()
