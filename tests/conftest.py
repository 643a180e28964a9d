"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest
import yaml

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for cloud_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from convergence.config import EngineConfig  # noqa: E402


@pytest.fixture
def fast_config(tmp_path: Path) -> EngineConfig:
    """Engine config with retry backoff disabled and a temp state path."""
    return EngineConfig(
        state_path=tmp_path / "state.json",
        max_workers=4,
        max_apply_attempts=3,
        retry_backoff_base_seconds=0.0,
        retry_backoff_max_seconds=0.0,
        health_check_interval_seconds=1,
        healthy_threshold=2,
        unhealthy_threshold=2,
    )


WEB_TIER_YAML = """
apiVersion: convergence/v1
kind: Topology
spec:
  variables:
    name_prefix: demo
    instance_count: 3
    instance_type: t3.micro

  data:
    - type: ami
      name: ubuntu
      filters:
        name: ubuntu-22.04

  resources:
    - type: vpc
      name: main
      attributes:
        cidr_block: 10.0.0.0/16
        tags:
          Name: ${var.name_prefix}-vpc

    - type: subnet
      name: public_a
      attributes:
        vpc_id: ${vpc.main.id}
        cidr_block: 10.0.1.0/24
        availability_zone: eu-west-1a

    - type: subnet
      name: public_b
      attributes:
        vpc_id: ${vpc.main.id}
        cidr_block: 10.0.2.0/24
        availability_zone: eu-west-1b

    - type: internet_gateway
      name: main
      attributes:
        vpc_id: ${vpc.main.id}

    - type: route_table
      name: public
      attributes:
        vpc_id: ${vpc.main.id}
        routes:
          - cidr_block: 0.0.0.0/0
            gateway_id: ${internet_gateway.main.id}

    - type: route_table_association
      name: public_a
      attributes:
        subnet_id: ${subnet.public_a.id}
        route_table_id: ${route_table.public.id}

    - type: route_table_association
      name: public_b
      attributes:
        subnet_id: ${subnet.public_b.id}
        route_table_id: ${route_table.public.id}

    - type: security_group
      name: web
      attributes:
        name: ${var.name_prefix}-web
        vpc_id: ${vpc.main.id}
        ingress:
          - port: 80
            cidr_blocks: ["0.0.0.0/0"]

    - type: load_balancer
      name: web
      attributes:
        name: ${var.name_prefix}-lb
        load_balancer_type: application
        internal: false
        subnets: ["${subnet.public_a.id}", "${subnet.public_b.id}"]
        security_groups: ["${security_group.web.id}"]

    - type: target_group
      name: web
      attributes:
        name: ${var.name_prefix}-tg
        port: 80
        protocol: HTTP
        vpc_id: ${vpc.main.id}
        health_check:
          path: /health
          healthy_threshold: 2
          unhealthy_threshold: 2

    - type: listener
      name: http
      attributes:
        load_balancer_arn: ${load_balancer.web.arn}
        port: 80
        default_target_group_arn: ${target_group.web.arn}

    - type: instance
      name: web
      count: ${var.instance_count}
      placement: ["${subnet.public_a.id}", "${subnet.public_b.id}"]
      attributes:
        ami: ${data.ami.ubuntu.id}
        instance_type: ${var.instance_type}
        vpc_security_group_ids: ["${security_group.web.id}"]
        tags:
          Name: ${var.name_prefix}-web-${count.index}

    - type: target_group_attachment
      name: web
      count: ${var.instance_count}
      attributes:
        target_group_arn: ${target_group.web.arn}
        target_id: ${instance.web[count.index].id}
        port: 80

  outputs:
    lb_dns_name: ${load_balancer.web.dns_name}
    instance_ips: ${instance.web[*].private_ip}
"""


@pytest.fixture
def web_tier_raw() -> dict:
    """Web tier topology: VPC, two subnets, load balancer, 3 instances."""
    return yaml.safe_load(WEB_TIER_YAML)


@pytest.fixture
def web_tier_file(tmp_path: Path) -> Path:
    """Web tier topology written to a YAML file."""
    path = tmp_path / "topology.yaml"
    path.write_text(WEB_TIER_YAML)
    return path
