"""Virtual host registry: hostname -> document root, CGI directory, TLS context."""

import logging
import os
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from OpenSSL import SSL

from .config import ConfigError, GeminiConfig
from .tls import install_sni, ssl_context

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VirtualHost:
    hostname: str
    root_dir: str
    cgi_dir: str
    context: Optional[SSL.Context] = None

    @classmethod
    def from_config(cls, config: GeminiConfig, load_tls: bool = True) -> "VirtualHost":
        context = ssl_context(config.cert_file, config.key_file) if load_tls else None
        cgi_dir = os.path.abspath(config.cgi_dir) if config.cgi_dir else ""
        return cls(
            hostname=config.hostname.lower(),
            root_dir=os.path.abspath(config.root_dir),
            cgi_dir=cgi_dir,
            context=context,
        )


class VirtualHostRegistry:
    """Capsules sharing one listener, keyed by exact hostname.

    Built once; never mutated afterwards, so handler threads read it without
    locking. The first host added is the default TLS identity.
    """

    def __init__(self, hosts: Iterable[VirtualHost]):
        self._hosts: Dict[str, VirtualHost] = {}
        self._default: Optional[VirtualHost] = None
        for host in hosts:
            if host.hostname in self._hosts:
                raise ConfigError(f"Duplicate capsule hostname: {host.hostname}")
            self._hosts[host.hostname] = host
            if self._default is None:
                self._default = host
        if self._default is None:
            raise ConfigError("No capsules configured")

    @classmethod
    def from_configs(cls, configs: Iterable[GeminiConfig], load_tls: bool = True):
        """Load every capsule's certificate eagerly; any failure is fatal."""
        hosts = []
        for config in configs:
            logger.debug("Registering %s", config)
            hosts.append(VirtualHost.from_config(config, load_tls=load_tls))
        return cls(hosts)

    def lookup(self, hostname: str) -> Optional[VirtualHost]:
        return self._hosts.get(hostname.lower())

    def __contains__(self, hostname: str) -> bool:
        return self.lookup(hostname) is not None

    def __len__(self):
        return len(self._hosts)

    @property
    def hostnames(self):
        return list(self._hosts)

    @property
    def default(self) -> VirtualHost:
        return self._default

    def context_for(self, hostname: str) -> Optional[SSL.Context]:
        host = self.lookup(hostname)
        return host.context if host else None

    def tls_context(self) -> SSL.Context:
        """The listener context: default certificate plus SNI selection."""
        if self._default.context is None:
            raise ConfigError("Registry was built without TLS material")
        return install_sni(self._default.context, self.context_for)
