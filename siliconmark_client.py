#!/usr/bin/env python3
"""
SiliconMark API Client
Logs into SiliconData and creates SiliconMark benchmark jobs.

Run directly to create a job and print the agent command line.
"""

import os
import sys
import json
import logging
import argparse
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Any, List, Optional

import requests
from dotenv import load_dotenv
from rich.console import Console

from errors import AuthFailure, JobCreationFailure
from utils import load_config, setup_logging


@dataclass
class SiliconMarkJob:
    """Job created on SiliconMark; `token` is the agent API key"""
    job_id: str
    token: str
    name: str


def _first_present(payload: Any, *keys: str) -> Optional[str]:
    """Return the first non-empty value among `data.<key>` and `<key>`"""
    if not isinstance(payload, dict):
        return None
    data = payload.get('data') if isinstance(payload.get('data'), dict) else {}
    for key in keys:
        for source in (data, payload):
            value = source.get(key)
            if value not in (None, "", "null"):
                return str(value)
    return None


class SiliconMarkClient:
    """Client for the SiliconData user and SiliconMark job endpoints"""

    def __init__(self, config: Dict[str, Any], logger: Optional[logging.Logger] = None):
        """
        Initialize SiliconMark client.

        Args:
            config: The `siliconmark` configuration section
            logger: Optional logger
        """
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.api_base = config['api_base'].rstrip('/')
        self.timeout = config.get('request_timeout', 30)
        self.session = requests.Session()
        self.session.headers.update({'Content-Type': 'application/json'})
        self._token: Optional[str] = None

    def login(self, email: str, password: str) -> str:
        """
        Exchange email and password for a bearer token.

        Raises:
            AuthFailure: Request failed or no token was returned
        """
        self.logger.info(f"Logging into SiliconData as {email}")

        try:
            response = self.session.post(
                f"{self.api_base}{self.config['login_path']}",
                json={'email': email, 'password': password},
                timeout=self.timeout
            )
            payload = response.json()
        except (requests.RequestException, ValueError) as e:
            raise AuthFailure(f"SiliconData login request failed: {e}") from e

        token = _first_present(payload, 'id_token')
        if not token:
            self.logger.debug(f"Login response: {payload}")
            raise AuthFailure("Failed to get SiliconData auth token")

        self._token = token
        return token

    def create_job(self, name: str, description: str, benchmarks: Optional[List[str]] = None) -> SiliconMarkJob:
        """
        Create a SiliconMark job.

        Args:
            name: Job name
            description: Job description
            benchmarks: Benchmark selectors (default from config)

        Returns:
            SiliconMarkJob with the agent API key

        Raises:
            JobCreationFailure: Not logged in, request failed, or no job token returned
        """
        if not self._token:
            raise JobCreationFailure("Not logged in to SiliconData")

        job_data = {
            'name': name,
            'benchmarks': benchmarks or self.config.get('benchmarks', ['quick_mark']),
            'node_count': self.config.get('node_count', 1),
            'description': description,
        }

        self.logger.info(f"Creating SiliconMark job {name}")

        try:
            response = self.session.post(
                f"{self.api_base}{self.config['jobs_path']}",
                json=job_data,
                headers={'Authorization': f"Bearer {self._token}"},
                timeout=self.timeout
            )
            payload = response.json()
        except (requests.RequestException, ValueError) as e:
            raise JobCreationFailure(f"SiliconMark job request failed: {e}") from e

        token = _first_present(payload, 'token')
        if not token:
            raise JobCreationFailure(f"Failed to create SiliconMark job: {json.dumps(payload)[:500]}")

        job = SiliconMarkJob(job_id=_first_present(payload, 'id') or "", token=token, name=name)
        self.logger.info(f"SiliconMark job created: {job.job_id}")
        return job


def main():
    """Create a standalone SiliconMark job and print how to run the agent"""
    load_dotenv()

    parser = argparse.ArgumentParser(description="Create a SiliconMark QuickMark job")
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to configuration file (default: config.yaml)")
    parser.add_argument("--name", help="Job name (default: current timestamp)")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default="WARNING")
    args = parser.parse_args()

    console = Console()
    setup_logging(args.log_level, None)
    config = load_config(args.config)

    email = os.getenv('SD_EMAIL')
    password = os.getenv('SD_PASSWORD')
    if not email or not password:
        console.print("[red]Set SD_EMAIL and SD_PASSWORD first (export SD_EMAIL=...; export SD_PASSWORD=...).[/red]")
        sys.exit(1)

    name = args.name or datetime.now().strftime("%Y-%m-%d-%H%M%S")
    client = SiliconMarkClient(config['siliconmark'])

    try:
        console.print(f"Logging in as {email}...")
        client.login(email, password)
        console.print("Got auth token.")
        console.print(f"Creating SiliconMark job '{name}'...")
        job = client.create_job(name, f"Job created by {email}")
    except (AuthFailure, JobCreationFailure) as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)

    console.print("[green]Job created.[/green]")
    console.print(f"Job ID:        {job.job_id}")
    console.print(f"Agent API key: {job.token}")
    console.print("\nRun the agent with:")
    console.print(f"  ./agent -api-key {job.token}", markup=False)


if __name__ == "__main__":
    main()
