"""
Cloud-init boot configuration for tenant VMs.

The rendered document carries the handshake secret, so it must only ever
be handed to the compute provider, never logged or persisted.
"""
import json
import shlex
import textwrap
from typing import Optional

from app.config import settings

_TEMPLATE = textwrap.dedent("""\
    #cloud-config
    package_update: true
    packages:
      - docker.io
      - docker-compose
      - curl

    write_files:
      - path: /opt/vmagent/.env
        permissions: "0600"
        content: |
          VM_SUBDOMAIN={subdomain}
          VM_DOMAIN={fqdn}
          VM_AUTH_SECRET={auth_secret}
      - path: /opt/vmagent/docker-compose.yml
        permissions: "0644"
        content: |
          version: '3.8'
          services:
            agent:
              image: {agent_image}
              restart: unless-stopped
              env_file: .env
              ports:
                - "3000:3000"
            caddy:
              image: caddy:2-alpine
              restart: unless-stopped
              command: caddy reverse-proxy --from {fqdn} --to agent:3000
              ports:
                - "80:80"
                - "443:443"
      - path: /opt/vmagent/register.json
        permissions: "0600"
        content: |
          {register_body}

    runcmd:
      - systemctl enable docker
      - systemctl start docker
      - cd /opt/vmagent && docker-compose up -d
      - >-
        curl -fsS --retry 30 --retry-delay 10 --retry-all-errors
        -H 'Content-Type: application/json'
        --data @/opt/vmagent/register.json
        {register_url}
    """)


def render_cloud_init(
    subdomain: str,
    auth_secret: str,
    register_url: Optional[str] = None,
    base_domain: Optional[str] = None,
    agent_image: Optional[str] = None,
) -> str:
    """Render the #cloud-config user data that boots the agent and registers back."""
    base_domain = base_domain or settings.VM_BASE_DOMAIN
    register_body = json.dumps({"subdomain": subdomain, "authSecret": auth_secret})
    return _TEMPLATE.format(
        subdomain=subdomain,
        fqdn=f"{subdomain}.{base_domain}",
        auth_secret=auth_secret,
        agent_image=agent_image or settings.VM_AGENT_IMAGE,
        register_body=register_body,
        register_url=shlex.quote(register_url or settings.registration_url),
    )
