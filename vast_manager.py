"""
Vast.ai Instance Manager
Handles offer lookup, instance provisioning, log polling, and teardown.
"""

import json
import time
import logging
from typing import Dict, Any, Optional, Tuple, List, Callable

from vastai_sdk import VastAI

from errors import (
    NoOfferFound,
    InstanceCreationFailure,
    ProvisionTimeout,
    BenchmarkFailure,
    TeardownFailure,
)
from utils import get_vast_api_key

FAILED_STATES = ('exited', 'error')


def _as_json(response: Any) -> Any:
    """SDK calls return parsed JSON or the raw CLI text depending on version"""
    if isinstance(response, (bytes, bytearray)):
        response = response.decode('utf-8', errors='replace')
    if isinstance(response, str):
        try:
            return json.loads(response)
        except json.JSONDecodeError:
            return response
    return response


class VastManager:
    """Manager for Vast.ai instance operations"""

    def __init__(self, config: Dict[str, Any], logger: logging.Logger, sdk: Optional[Any] = None):
        """
        Initialize Vast.ai manager.

        Args:
            config: The `vast` configuration section
            logger: Logger instance
            sdk: Pre-built SDK client (defaults to VastAI with the configured key)
        """
        self.config = config
        self.logger = logger

        if sdk is None:
            api_key = get_vast_api_key()
            if not api_key:
                raise ValueError("No Vast.ai API key found. Set VAST_API_KEY or run 'vast set api-key YOUR_KEY'")
            sdk = VastAI(api_key=api_key)

        self.sdk = sdk

    def find_offer(self, machine_id: int) -> Dict[str, Any]:
        """
        Find a rentable offer on a specific machine.

        Args:
            machine_id: Vast.ai machine ID

        Returns:
            The first offer dict (id, gpu_name, num_gpus, dph_total, dlperf, host_id, geolocation)

        Raises:
            NoOfferFound: The machine has no rentable offer
        """
        self.logger.info(f"Searching for available offers on machine {machine_id}")

        try:
            offers = _as_json(self.sdk.search_offers(query=f"machine_id={machine_id} rentable=true"))
        except Exception as e:
            self.logger.warning(f"Offer search failed: {e}")
            offers = []

        if not isinstance(offers, list) or not offers or not isinstance(offers[0], dict):
            raise NoOfferFound(machine_id)

        offer = offers[0]
        if offer.get('id') is None:
            self.logger.error(f"Could not parse offer ID from search results: {offers}")
            raise NoOfferFound(machine_id)

        self.logger.info(f"Found offer {offer['id']} for machine {machine_id}")
        return offer

    def create_instance(self, offer_id: int, onstart_script: str, label: str) -> int:
        """
        Rent an instance from an offer.

        Args:
            offer_id: Offer (ask contract) ID
            onstart_script: Script run by the instance on boot
            label: Instance label, used to find the instance again on cancellation

        Returns:
            Instance ID

        Raises:
            InstanceCreationFailure: Creation failed or no contract ID was returned
        """
        image = self.config.get('image', 'vastai/pytorch')
        disk = self.config.get('disk_space', 20)
        self.logger.info(f"Creating instance from offer {offer_id}: image={image}, disk={disk}GB, label={label}")

        try:
            response = _as_json(self.sdk.create_instance(
                id=offer_id,
                image=image,
                disk=disk,
                onstart_cmd=onstart_script,
                label=label,
                ssh=True,
                direct=True
            ))
        except Exception as e:
            raise InstanceCreationFailure(f"Failed to create instance: {e}") from e

        instance_id = response.get('new_contract') if isinstance(response, dict) else None
        if not instance_id:
            raise InstanceCreationFailure(f"Could not get instance ID from create response: {response}")

        self.logger.info(f"Instance created: ID={instance_id}")
        return int(instance_id)

    def get_instance_info(self, instance_id: int) -> Optional[Dict[str, Any]]:
        """
        Get detailed information about an instance.

        Args:
            instance_id: Instance ID

        Returns:
            Dictionary with instance information, or None if failed
        """
        try:
            info = _as_json(self.sdk.show_instance(id=instance_id))

            if isinstance(info, list) and info:
                return info[0]
            elif isinstance(info, dict):
                return info
            else:
                return None

        except Exception as e:
            self.logger.debug(f"Failed to get instance info: {e}")
            return None

    def get_instance_status(self, instance_id: int) -> str:
        """Current lifecycle state ("loading", "running", "exited", ... or "unknown")"""
        info = self.get_instance_info(instance_id) or {}
        return info.get('actual_status') or info.get('status') or 'unknown'

    def wait_for_running(
        self,
        instance_id: int,
        timeout: Optional[int] = None,
        poll_interval: Optional[int] = None,
        on_status: Optional[Callable[[str, int], None]] = None
    ):
        """
        Block until the instance reports "running".

        Args:
            instance_id: Instance ID
            timeout: Maximum time to wait in seconds
            poll_interval: Seconds between status checks
            on_status: Called with (status, seconds waited) after each check

        Raises:
            BenchmarkFailure: Instance entered an exited/error state
            ProvisionTimeout: Instance was not running before the timeout
        """
        timeout = timeout if timeout is not None else self.config.get('ready_timeout', 300)
        poll_interval = poll_interval if poll_interval is not None else self.config.get('ready_poll_interval', 10)

        waited = 0
        while waited < timeout:
            status = self.get_instance_status(instance_id)
            self.logger.info(f"Instance {instance_id} status: {status} (waited {waited}s)")
            if on_status:
                on_status(status, waited)

            if status == 'running':
                return
            if status in FAILED_STATES:
                raise BenchmarkFailure(f"Instance {instance_id} failed to start (status: {status})")

            time.sleep(poll_interval)
            waited += poll_interval

        raise ProvisionTimeout(instance_id, timeout)

    def get_instance_logs(self, instance_id: int, tail: Optional[int] = None) -> str:
        """
        Get instance logs.

        Args:
            instance_id: Instance ID
            tail: Number of lines to retrieve (None for all)

        Returns:
            Log content as string
        """
        self.logger.debug(f"Retrieving logs for instance {instance_id}")

        try:
            if tail is None:
                logs = self.sdk.logs(instance_id=instance_id)
            else:
                logs = self.sdk.logs(instance_id=instance_id, tail=str(tail))
            if isinstance(logs, (bytes, bytearray)):
                return logs.decode('utf-8', errors='replace')
            return logs if isinstance(logs, str) else str(logs or "")

        except Exception as e:
            self.logger.debug(f"Failed to retrieve logs: {e}")
            return ""

    def wait_for_log_marker(
        self,
        instance_id: int,
        marker: str,
        timeout: int,
        poll_interval: int,
        on_poll: Optional[Callable[[str, int], None]] = None
    ) -> Optional[str]:
        """
        Poll instance logs until a marker string appears.

        Args:
            instance_id: Instance ID
            marker: Substring to look for
            timeout: Maximum time to wait in seconds
            poll_interval: Seconds between polls
            on_poll: Called with (last non-empty log line, seconds waited) after each poll

        Returns:
            The full log text once the marker is seen, or None on timeout
        """
        waited = 0
        while waited < timeout:
            logs = self.get_instance_logs(instance_id)

            if on_poll:
                lines = [line for line in logs.splitlines() if line.strip()]
                on_poll(lines[-1] if lines else "", waited)

            if marker in logs:
                self.logger.info(f"Found '{marker}' in logs of instance {instance_id} after {waited}s")
                return logs

            time.sleep(poll_interval)
            waited += poll_interval

        self.logger.warning(f"Timeout waiting for '{marker}' in logs of instance {instance_id}")
        return None

    def get_ssh_details(self, instance_id: int) -> Tuple[str, int]:
        """
        Get SSH host and port for an instance.

        Raises:
            BenchmarkFailure: The instance has no SSH host yet
        """
        info = self.get_instance_info(instance_id) or {}
        ssh_host = info.get('ssh_host') or info.get('public_ipaddr')
        ssh_port = info.get('ssh_port') or 22

        if not ssh_host:
            raise BenchmarkFailure(f"Could not get SSH host from instance info: {info}")

        return ssh_host, int(ssh_port)

    def destroy_instance(self, instance_id: int):
        """
        Terminate and destroy an instance.

        Args:
            instance_id: Instance ID

        Raises:
            TeardownFailure: The destroy call failed
        """
        self.logger.info(f"Destroying instance {instance_id}")

        try:
            response = self.sdk.destroy_instance(id=instance_id)
            self.logger.info(f"Instance {instance_id} destroyed: {response}")
        except Exception as e:
            raise TeardownFailure(instance_id, e) from e

    def find_instances_by_label(self, label: str) -> List[int]:
        """IDs of the account's instances carrying `label`"""
        try:
            instances = _as_json(self.sdk.show_instances())
        except Exception as e:
            self.logger.warning(f"Failed to list instances: {e}")
            return []

        if not isinstance(instances, list):
            return []

        return [inst['id'] for inst in instances
                if isinstance(inst, dict) and inst.get('label') == label and inst.get('id') is not None]

    def destroy_instances_by_label(self, label: str) -> List[int]:
        """
        Best-effort destroy of every instance carrying `label`.

        Failures are logged as warnings and never raised.

        Returns:
            IDs that were destroyed
        """
        destroyed = []
        for instance_id in self.find_instances_by_label(label):
            try:
                self.destroy_instance(instance_id)
                destroyed.append(instance_id)
            except TeardownFailure as e:
                self.logger.warning(f"{e}. Run: vast destroy instance {instance_id}")
        return destroyed
