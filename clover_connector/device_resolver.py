# Device Resolver - turns a CloverConfig into a socket address
# Direct LAN addresses pass through; cloud configurations are resolved over the REST API

import logging
from typing import Any, Dict, Optional, Tuple

import requests

from .config import CloverConfig
from .errors import CloverError, ErrorCode
from .messages import LAN_PACKAGE, WEBSOCKET_PACKAGE

logger = logging.getLogger(__name__)

DEVICES_PATH = 'v3/merchants/{merchant_id}/devices'
REMOTE_PAY_PATH = 'v2/merchant/{merchant_id}/remote_pay'
NO_CLOUD_DISPLAY_MODELS = ('Clover_C100',)


class DeviceResolver:
    """REST client that finds the terminal and asks the cloud relay for a connection token"""

    def __init__(self, timeout: int = 30, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'Content-Type': 'application/json',
            'User-Agent': 'clover-connector/0.1'
        })
        self.devices_by_serial: Dict[str, Dict[str, Any]] = {}

    def resolve(self, config: CloverConfig) -> Tuple[str, str]:
        """Returns (socket address, package name) for the configuration"""
        if config.device_url:
            return config.device_url, LAN_PACKAGE

        missing = [name for name in ('oauth_token', 'domain', 'merchant_id')
                   if not getattr(config, name)]
        if not (config.device_id or config.device_serial_id):
            missing.append('device_id or device_serial_id')
        if missing:
            raise CloverError(ErrorCode.INCOMPLETE_CONFIGURATION,
                              f"Configuration is missing {', '.join(missing)}")

        device_id = config.device_id
        if not device_id:
            device_id = self.lookup_device_id(config)
        return self.alert_device(config, device_id), WEBSOCKET_PACKAGE

    def lookup_device_id(self, config: CloverConfig) -> str:
        """Map a serial number to a device id"""
        data = self._request('GET', config, DEVICES_PATH)
        devices = data.get('devices')
        if devices is None:
            devices = data.get('elements', [])
        self.devices_by_serial = {device.get('serial'): device for device in devices}

        device = self.devices_by_serial.get(config.device_serial_id)
        if device is None:
            raise CloverError(ErrorCode.DEVICE_NOT_FOUND,
                              f"Device {config.device_serial_id} not in the merchant's device list")
        if device.get('model') in NO_CLOUD_DISPLAY_MODELS:
            logger.warning(f"Device {config.device_serial_id} ({device.get('model')}) "
                           "does not support cloud pay display")
        return device['id']

    def alert_device(self, config: CloverConfig, device_id: str) -> str:
        """Wake the cloud pay display and return the relay address"""
        body = {
            'deviceId': device_id.replace('-', ''),
            'isSilent': True
        }
        data = self._request('POST', config, REMOTE_PAY_PATH, json=body)

        if 'sent' in data and not data['sent']:
            raise CloverError(ErrorCode.DEVICE_OFFLINE,
                              f"Device {device_id} is offline or not reachable by the cloud")
        try:
            url = f"{data['host']}/support/cs?token={data['token']}"
        except KeyError as e:
            raise CloverError(ErrorCode.COMMUNICATION_ERROR,
                              f"Unexpected remote_pay response, missing {e}") from e
        logger.info(f"Device {device_id} alerted, relay at {data['host']}")
        return url

    def _request(self, method: str, config: CloverConfig, path: str, **kwargs) -> Dict[str, Any]:
        endpoint = config.domain.rstrip('/') + '/' + path.format(merchant_id=config.merchant_id)
        try:
            response = self.session.request(
                method,
                endpoint,
                params={'access_token': config.oauth_token},
                timeout=self.timeout,
                **kwargs
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"{method} {endpoint} failed: {e}")
            raise CloverError(ErrorCode.COMMUNICATION_ERROR, f"Could not reach {endpoint}", e) from e

        if response.status_code == 401:
            logger.error("Authentication failed - check the oauth token")
        if response.status_code != 200:
            raise CloverError(ErrorCode.COMMUNICATION_ERROR,
                              f"{method} {endpoint} returned {response.status_code}: {response.text[:200]}")
        try:
            data = response.json()
        except ValueError as e:
            raise CloverError(ErrorCode.COMMUNICATION_ERROR, f"{endpoint} did not return JSON", e) from e
        return data if isinstance(data, dict) else {}


# Stub implementation for testing
class StubDeviceResolver:
    """Resolver that returns a fixed address"""

    def __init__(self, url: str = 'ws://127.0.0.1:12345/remote_pay', package_name: str = LAN_PACKAGE,
                 error: Optional[CloverError] = None):
        self.url = url
        self.package_name = package_name
        self.error = error
        self.resolved = []

    def resolve(self, config: CloverConfig) -> Tuple[str, str]:
        self.resolved.append(config)
        if self.error:
            raise self.error
        return self.url, self.package_name
