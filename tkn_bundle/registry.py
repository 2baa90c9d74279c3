# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Blocking OCI distribution (registry v2) client.

Only the calls the bundler and the signature backend need are implemented:
blob existence/upload/download and manifest get/put. Authentication follows
the registry's `WWW-Authenticate` challenge (Basic, or Bearer via the token
endpoint), with credentials taken from a keychain.

Every call takes a `Deadline`; each HTTP request uses the remaining time as
its timeout, and a call made after the deadline fails without touching the
network.
"""

from __future__ import annotations

import base64
import re
import time
from dataclasses import dataclass
from typing import Any, Mapping
from urllib.parse import urlencode, urljoin

import requests

from tkn_bundle.auth import Credential, Keychain
from tkn_bundle.config import RegistryOptions
from tkn_bundle.image import sha256_digest
from tkn_bundle.reference import Reference

MANIFEST_ACCEPT = ",".join(
	[
		"application/vnd.docker.distribution.manifest.v2+json",
		"application/vnd.oci.image.manifest.v1+json",
		"application/vnd.docker.distribution.manifest.list.v2+json",
		"application/vnd.oci.image.index.v1+json",
	]
)

_CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


class RegistryError(Exception):
	def __init__(self, message: str, *, status: int | None = None, url: str | None = None) -> None:
		self.status = status
		self.url = url
		text = message
		if status is not None:
			text += f" (status {status})"
		if url:
			text += f" [{url}]"
		super().__init__(text)


class DeadlineExceeded(RegistryError):
	pass


@dataclass(frozen=True)
class Deadline:
	"""An absolute `time.monotonic()` deadline; `at=None` means no deadline."""

	at: float | None = None

	@classmethod
	def after(cls, seconds: float | None) -> Deadline:
		if seconds is None:
			return cls(at=None)
		return cls(at=time.monotonic() + seconds)

	def remaining(self) -> float | None:
		"""Seconds left, or None without a deadline. Raises DeadlineExceeded when expired."""
		if self.at is None:
			return None
		left = self.at - time.monotonic()
		if left <= 0:
			raise DeadlineExceeded("deadline exceeded")
		return left


NO_DEADLINE = Deadline()


def parse_challenge(header: str) -> tuple[str, dict[str, str]]:
	"""Split a `WWW-Authenticate` header into (scheme, params)."""
	scheme, _, rest = header.strip().partition(" ")
	return scheme.lower(), dict(_CHALLENGE_PARAM_RE.findall(rest))


def _basic_header(cred: Credential) -> str:
	raw = f"{cred.username}:{cred.password}".encode("utf-8")
	return "Basic " + base64.b64encode(raw).decode("ascii")


class RegistryClient:
	def __init__(
		self,
		keychain: Keychain,
		opts: RegistryOptions | None = None,
		session: Any | None = None,
	) -> None:
		self.keychain = keychain
		self.opts = opts or RegistryOptions()
		self.session = session if session is not None else requests.Session()
		self._auth_headers: dict[tuple[str, str], str] = {}

	def _base_url(self, ref: Reference) -> str:
		return f"{ref.scheme(self.opts.insecure)}://{ref.api_host()}/v2/{ref.repository}/"

	def _send(
		self,
		method: str,
		url: str,
		*,
		deadline: Deadline,
		headers: Mapping[str, str] | None = None,
		data: bytes | None = None,
		params: Mapping[str, str] | None = None,
	) -> Any:
		hdrs = {"User-Agent": self.opts.user_agent}
		hdrs.update(headers or {})
		try:
			return self.session.request(
				method,
				url,
				headers=hdrs,
				data=data,
				params=params,
				timeout=deadline.remaining(),
			)
		except requests.Timeout as err:
			raise DeadlineExceeded(f"{method} timed out", url=url) from err
		except requests.RequestException as err:
			raise RegistryError(f"{method} failed: {err}", url=url) from err

	def _token(self, ref: Reference, params: dict[str, str], scope: str, deadline: Deadline) -> str:
		realm = params.get("realm")
		if not realm:
			raise RegistryError("bearer challenge without realm")
		cred = self.keychain.resolve(ref.registry)
		if cred is not None and cred.registry_token:
			return cred.registry_token
		query = {"scope": scope}
		if params.get("service"):
			query["service"] = params["service"]
		if cred is not None and cred.identity_token:
			resp = self._send(
				"POST",
				realm,
				deadline=deadline,
				headers={"Content-Type": "application/x-www-form-urlencoded"},
				data=urlencode(
					{
						"grant_type": "refresh_token",
						"refresh_token": cred.identity_token,
						"service": query.get("service", ""),
						"scope": scope,
						"client_id": "tkn-bundle",
					}
				).encode("utf-8"),
			)
		else:
			headers = {}
			if cred is not None and not cred.anonymous:
				headers["Authorization"] = _basic_header(cred)
			resp = self._send("GET", realm, deadline=deadline, headers=headers, params=query)
		if resp.status_code != 200:
			raise RegistryError("token request rejected", status=resp.status_code, url=realm)
		try:
			body = resp.json()
		except ValueError as err:
			raise RegistryError("token response is not JSON", url=realm) from err
		if not isinstance(body, dict):
			raise RegistryError("token response must be a JSON object", url=realm)
		token = body.get("token") or body.get("access_token")
		if not isinstance(token, str) or not token:
			raise RegistryError("token response has no token", url=realm)
		return token

	def _authorize(self, ref: Reference, challenge: str, scope: str, deadline: Deadline) -> str:
		scheme, params = parse_challenge(challenge)
		if scheme == "basic":
			cred = self.keychain.resolve(ref.registry)
			if cred is None or cred.anonymous:
				raise RegistryError(f"registry {ref.registry} requires credentials", status=401)
			return _basic_header(cred)
		if scheme == "bearer":
			return "Bearer " + self._token(ref, params, scope, deadline)
		raise RegistryError(f"unsupported auth challenge {scheme!r}", status=401)

	def request(
		self,
		method: str,
		ref: Reference,
		path: str,
		*,
		deadline: Deadline = NO_DEADLINE,
		actions: str = "pull",
		headers: Mapping[str, str] | None = None,
		data: bytes | None = None,
		params: Mapping[str, str] | None = None,
		expected: tuple[int, ...] = (200,),
		absolute_url: str | None = None,
	) -> Any:
		"""
		Issue one registry call, answering at most one auth challenge.

		Raises RegistryError unless the final status is in `expected`.
		"""
		url = absolute_url or urljoin(self._base_url(ref), path)
		scope = f"repository:{ref.repository}:{actions}"
		cache_key = (ref.registry, scope)
		hdrs = dict(headers or {})
		if cache_key in self._auth_headers:
			hdrs["Authorization"] = self._auth_headers[cache_key]
		resp = self._send(method, url, deadline=deadline, headers=hdrs, data=data, params=params)
		if resp.status_code == 401 and resp.headers.get("WWW-Authenticate"):
			auth = self._authorize(ref, resp.headers["WWW-Authenticate"], scope, deadline)
			self._auth_headers[cache_key] = auth
			hdrs["Authorization"] = auth
			resp = self._send(method, url, deadline=deadline, headers=hdrs, data=data, params=params)
		if resp.status_code not in expected:
			raise RegistryError(f"{method} {path} unexpected response", status=resp.status_code, url=url)
		return resp

	def blob_exists(self, ref: Reference, digest: str, *, deadline: Deadline = NO_DEADLINE) -> bool:
		resp = self.request("HEAD", ref, f"blobs/{digest}", deadline=deadline, actions="pull,push", expected=(200, 404))
		return resp.status_code == 200

	def upload_blob(self, ref: Reference, digest: str, data: bytes, *, deadline: Deadline = NO_DEADLINE) -> None:
		"""Monolithic upload: POST to open an upload session, then PUT the bytes."""
		resp = self.request("POST", ref, "blobs/uploads/", deadline=deadline, actions="pull,push", expected=(202,))
		location = resp.headers.get("Location")
		if not location:
			raise RegistryError("upload session without Location header")
		upload_url = urljoin(self._base_url(ref), location)
		self.request(
			"PUT",
			ref,
			"blobs/uploads/",
			deadline=deadline,
			actions="pull,push",
			headers={"Content-Type": "application/octet-stream"},
			data=data,
			params={"digest": digest},
			expected=(201,),
			absolute_url=upload_url,
		)

	def get_blob(self, ref: Reference, digest: str, *, deadline: Deadline = NO_DEADLINE) -> bytes:
		resp = self.request("GET", ref, f"blobs/{digest}", deadline=deadline)
		data = resp.content
		if sha256_digest(data) != digest:
			raise RegistryError(f"blob digest mismatch for {digest}")
		return data

	def put_manifest(
		self,
		ref: Reference,
		data: bytes,
		media_type: str,
		*,
		deadline: Deadline = NO_DEADLINE,
	) -> str:
		self.request(
			"PUT",
			ref,
			f"manifests/{ref.identifier}",
			deadline=deadline,
			actions="pull,push",
			headers={"Content-Type": media_type},
			data=data,
			expected=(200, 201),
		)
		return sha256_digest(data)

	def get_manifest(self, ref: Reference, *, deadline: Deadline = NO_DEADLINE) -> tuple[bytes, str, str]:
		"""Return (manifest bytes, media type, digest)."""
		resp = self.request("GET", ref, f"manifests/{ref.identifier}", deadline=deadline, headers={"Accept": MANIFEST_ACCEPT})
		data = resp.content
		digest = sha256_digest(data)
		if ref.digest is not None and digest != ref.digest:
			raise RegistryError(f"manifest digest mismatch for {ref.name()}")
		return data, resp.headers.get("Content-Type", ""), digest

	def resolve_digest(self, ref: Reference, *, deadline: Deadline = NO_DEADLINE) -> str:
		if ref.digest is not None:
			return ref.digest
		resp = self.request("HEAD", ref, f"manifests/{ref.identifier}", deadline=deadline, headers={"Accept": MANIFEST_ACCEPT})
		digest = resp.headers.get("Docker-Content-Digest")
		if digest:
			return digest
		_, _, digest = self.get_manifest(ref, deadline=deadline)
		return digest
