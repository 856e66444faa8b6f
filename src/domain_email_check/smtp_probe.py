"""SMTP STARTTLS probe.

The conversation with a mail exchanger is an explicit state machine::

    Idle -> Connected -> EhloSent -> StarttlsOffered -> TlsNegotiating
         -> Secure -> PostEhlo -> MailFromSent -> Done

``transition`` decides what happens next from the current state and the
reply just read; it does no I/O. ``SmtpProbe.run`` owns the socket and drives
the loop with one blocking read per stage, each under its own timeout. Any
socket error, TLS failure, timeout or unexpected reply code jumps straight to
``Done`` and the partial result is returned; nothing is raised past ``run``.
A probe is never retried.
"""

import asyncio
import logging
import re
import socket
import ssl
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Pattern

from .config import Settings, get_settings
from .models import (MtastsResult, MxRecordInfo, StarttlsCheck, StarttlsSummary, StopAfter,
                     issue)

logger = logging.getLogger(__name__)

GREETING_RE = re.compile(r"^220\b", re.M)
EHLO_OK_RE = re.compile(r"^250[ -]", re.M)
TLS_READY_RE = re.compile(r"^220\b", re.M)
MAIL_FROM_OK_RE = re.compile(r"^250\b", re.M)
STARTTLS_CAPABILITY_RE = re.compile(r"^250[ -]STARTTLS\b", re.M | re.I)
CONTINUATION_RE = re.compile(r"^\d{3}-")

SCORE_WEIGHTS = {
    "connect_ok": 20,
    "helo_ok": 10,
    "starttls_supported": 15,
    "tls_established": 15,
    "cert_authorized": 15,
    "secure_ok": 10,
    "mail_from_ok": 15,
}


class ProbeState(Enum):
    IDLE = "Idle"
    CONNECTED = "Connected"
    EHLO_SENT = "EhloSent"
    STARTTLS_OFFERED = "StarttlsOffered"
    TLS_NEGOTIATING = "TlsNegotiating"
    SECURE = "Secure"
    POST_EHLO = "PostEhlo"
    MAIL_FROM_SENT = "MailFromSent"
    DONE = "Done"


@dataclass
class ProbeOptions:
    compel_tls: bool = False
    direct_tls: bool = False
    stop_after: Optional[StopAfter] = None
    timeout: float = 4.0
    mail_from_grace: float = 3.0
    helo_name: str = "probe.domain-email-check"


@dataclass
class Step:
    """What the driver must do to leave ``state``."""

    state: ProbeState
    connect: bool = False
    send: Optional[str] = None
    upgrade: bool = False
    expect: Optional[Pattern] = None
    timing: Optional[str] = None
    extra_wait: float = 0.0


@dataclass
class TlsSession:
    protocol: Optional[str] = None
    cipher: Optional[str] = None
    authorized: bool = False
    cert: Dict = field(default_factory=dict)


class SmtpReplyError(Exception):
    """The server answered with a code other than the one the stage expects."""

    def __init__(self, reply: str):
        self.reply = reply
        super().__init__(reply.splitlines()[-1] if reply else "empty reply")


def is_secure_session(protocol: Optional[str], cipher: Optional[str]) -> bool:
    """TLS 1.2/1.3 with a forward-secret key exchange."""
    version = (protocol or "").upper()
    name = (cipher or "").upper()
    if version == "TLSV1.3":
        # every TLS 1.3 suite uses (EC)DHE; the suite name no longer says so
        return True
    return version == "TLSV1.2" and ("ECDHE" in name or "DHE" in name)


def compute_tls_score(check: StarttlsCheck) -> int:
    return sum(weight for name, weight in SCORE_WEIGHTS.items() if getattr(check, name))


def transition(state: ProbeState, reply: Optional[str], options: ProbeOptions,
               result: StarttlsCheck) -> Step:
    """
    Advance the probe by one stage.

    ``reply`` is the server reply that satisfied the previous step's
    expectation (``None`` when that step expected nothing). Facts learnt from
    the reply are recorded on ``result``.
    """
    stop = options.stop_after
    direct = options.direct_tls

    if state is ProbeState.IDLE:
        if stop is StopAfter.ANSWER:
            return Step(ProbeState.DONE)
        if direct:
            return Step(ProbeState.TLS_NEGOTIATING, connect=True, upgrade=True, timing="tls_handshake_ms")
        return Step(ProbeState.CONNECTED, connect=True, expect=GREETING_RE, timing="connect_ms")

    if state is ProbeState.CONNECTED:
        result.connect_ok = True
        if stop is StopAfter.CONNECT:
            return Step(ProbeState.DONE)
        return Step(ProbeState.EHLO_SENT, send=f"EHLO {options.helo_name}", expect=EHLO_OK_RE,
                    timing="helo_ms")

    if state is ProbeState.EHLO_SENT:
        result.helo_ok = True
        result.starttls_supported = bool(STARTTLS_CAPABILITY_RE.search(reply or ""))
        if stop is StopAfter.EHLO1:
            return Step(ProbeState.DONE)
        if not result.starttls_supported:
            result.issues.append(issue("warning", "STARTTLS not offered",
                                       "The EHLO response does not advertise STARTTLS."))
            if not options.compel_tls:
                return Step(ProbeState.DONE)
        return Step(ProbeState.STARTTLS_OFFERED, send="STARTTLS", expect=TLS_READY_RE,
                    timing="starttls_offer_ms")

    if state is ProbeState.STARTTLS_OFFERED:
        return Step(ProbeState.TLS_NEGOTIATING, upgrade=True, timing="tls_handshake_ms")

    if state is ProbeState.TLS_NEGOTIATING:
        result.tls_established = True
        result.secure_ok = is_secure_session(result.tls_protocol, result.cipher)
        if not result.secure_ok:
            result.issues.append(issue("warning", "TLS session is not considered secure",
                                       f"{result.tls_protocol} / {result.cipher}"))
        if direct:
            result.connect_ok = True
            # implicit TLS: the greeting arrives over the encrypted channel
            return Step(ProbeState.SECURE, expect=GREETING_RE, timing="connect_ms")
        if stop is StopAfter.STARTTLS:
            return Step(ProbeState.DONE)
        return Step(ProbeState.SECURE)

    if state is ProbeState.SECURE:
        if direct and stop in (StopAfter.CONNECT, StopAfter.STARTTLS):
            return Step(ProbeState.DONE)
        return Step(ProbeState.POST_EHLO, send=f"EHLO {options.helo_name}", expect=EHLO_OK_RE,
                    timing="helo_ms" if direct else None)

    if state is ProbeState.POST_EHLO:
        result.helo_ok = True
        if stop is StopAfter.EHLO2 or (direct and stop is StopAfter.EHLO1):
            return Step(ProbeState.DONE)
        return Step(ProbeState.MAIL_FROM_SENT, send=f"MAIL FROM:<test@{result.host}>",
                    expect=MAIL_FROM_OK_RE, timing="mail_from_ms", extra_wait=options.mail_from_grace)

    if state is ProbeState.MAIL_FROM_SENT:
        result.mail_from_ok = True

    # RCPT TO and DATA are never sent: this is a probe, not a mail client
    return Step(ProbeState.DONE)


class SmtpTransport:
    """Blocking SMTP connection that can be upgraded to TLS in place."""

    def __init__(self):
        self.sock: Optional[socket.socket] = None
        self.secure = False
        self._buffer = b""

    def connect(self, host: str, port: int, timeout: float) -> None:
        self.sock = socket.create_connection((host, port), timeout=timeout)

    def send_line(self, line: str) -> None:
        self.sock.sendall(line.encode("ascii", errors="replace") + b"\r\n")

    def _read_line(self, deadline: float) -> str:
        while b"\n" not in self._buffer:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise socket.timeout("timed out waiting for SMTP reply")
            self.sock.settimeout(remaining)
            chunk = self.sock.recv(4096)
            if not chunk:
                raise ConnectionError("connection closed by server")
            self._buffer += chunk
        line, _, self._buffer = self._buffer.partition(b"\n")
        return line.rstrip(b"\r").decode("utf-8", errors="replace")

    def read_reply(self, timeout: float) -> List[str]:
        """Read one complete (possibly multi-line) reply."""
        deadline = time.monotonic() + timeout
        lines = []
        while True:
            line = self._read_line(deadline)
            lines.append(line)
            if not CONTINUATION_RE.match(line):
                return lines

    def start_tls(self, server_hostname: str, timeout: float) -> TlsSession:
        """Run the TLS handshake on the already connected socket."""
        context = ssl.create_default_context()
        # plaintext sent ahead of the handshake must not be read as TLS-protected
        self._buffer = b""
        if self.sock is None:
            raise ConnectionError("not connected")
        self.sock.settimeout(timeout)
        self.sock = context.wrap_socket(self.sock, server_hostname=server_hostname)
        self.secure = True
        cipher = self.sock.cipher()
        return TlsSession(
            protocol=self.sock.version(),
            cipher=cipher[0] if cipher else None,
            authorized=True,
            cert=self.sock.getpeercert() or {},
        )

    def close(self) -> None:
        if self.sock is not None:
            try:
                self.sock.close()
            except OSError:
                pass
            self.sock = None


def _subject_cn(cert: Dict) -> Optional[str]:
    for rdn in cert.get("subject", ()):
        for key, value in rdn:
            if key == "commonName":
                return value
    return None


class SmtpProbe:
    """Probe one MX host on one port."""

    def __init__(self, host: str, port: int, options: Optional[ProbeOptions] = None,
                 connect_host: Optional[str] = None,
                 transport_factory: Callable[[], SmtpTransport] = SmtpTransport):
        self.host = host
        self.port = port
        self.options = options or ProbeOptions()
        self.connect_host = connect_host or host
        self.transport_factory = transport_factory
        self.state = ProbeState.IDLE

    def _log(self, result: StarttlsCheck, transport: SmtpTransport, outgoing: bool, line: str) -> None:
        if transport.secure:
            prefix = "~~>" if outgoing else "<~~"
        else:
            prefix = "-->" if outgoing else "<--"
        result.transcript.append(f"{prefix} {line}")

    def _apply_session(self, result: StarttlsCheck, session: TlsSession) -> None:
        result.tls_protocol = session.protocol
        result.cipher = session.cipher
        result.cert_authorized = session.authorized
        result.cert_subject_cn = _subject_cn(session.cert)
        result.cert_valid_from = session.cert.get("notBefore")
        result.cert_valid_to = session.cert.get("notAfter")

    def _execute(self, step: Step, transport: SmtpTransport, result: StarttlsCheck) -> Optional[str]:
        opts = self.options
        started = time.monotonic()
        if step.connect:
            logger.debug("connecting to %s:%d (%s)", self.connect_host, self.port, self.host)
            transport.connect(self.connect_host, self.port, opts.timeout)
        if step.send:
            self._log(result, transport, True, step.send)
            transport.send_line(step.send)
        if step.upgrade:
            self._apply_session(result, transport.start_tls(self.host, opts.timeout))
        reply = None
        if step.expect is not None:
            lines = transport.read_reply(opts.timeout + step.extra_wait)
            for line in lines:
                self._log(result, transport, False, line)
            reply = "\n".join(lines)
            if not step.expect.search(reply):
                raise SmtpReplyError(reply)
        if step.timing:
            setattr(result.timings, step.timing, int((time.monotonic() - started) * 1000))
        return reply

    def run(self) -> StarttlsCheck:
        result = StarttlsCheck(host=self.host)
        transport = self.transport_factory()
        step = transition(ProbeState.IDLE, None, self.options, result)
        try:
            while step.state is not ProbeState.DONE:
                self.state = step.state
                reply = self._execute(step, transport, result)
                step = transition(step.state, reply, self.options, result)
        except ssl.SSLCertVerificationError as e:
            result.cert_authorized = False
            result.issues.append(issue("warning", "TLS certificate verification failed",
                                       getattr(e, "verify_message", None) or str(e)))
        except ssl.SSLError as e:
            result.issues.append(issue("warning", "TLS handshake failed", str(e)))
        except SmtpReplyError as e:
            result.issues.append(issue("warning", f"Unexpected SMTP reply in state {self.state.value}",
                                       str(e)))
        except socket.timeout:
            result.issues.append(issue("warning", f"SMTP timeout in state {self.state.value}",
                                       f"No reply within {self.options.timeout}s"))
        except OSError as e:
            summary = "SMTP connection failed" if not result.connect_ok else "SMTP session aborted"
            result.issues.append(issue("warning", summary, str(e)))
        finally:
            transport.close()
        logger.debug("probe %s:%d finished in state %s", self.host, self.port, self.state.value)
        self.state = ProbeState.DONE
        return result


@dataclass
class StarttlsRunOptions:
    quick_test: bool = False
    compel_tls: bool = False
    direct_tls: bool = False
    ports: List[int] = field(default_factory=lambda: [25])
    stop_after: Optional[StopAfter] = None


async def check_starttls(mx_records: List[MxRecordInfo], mtasts: Optional[MtastsResult],
                         options: StarttlsRunOptions, settings: Optional[Settings] = None,
                         transport_factory: Callable[[], SmtpTransport] = SmtpTransport
                         ) -> StarttlsSummary:
    """
    Probe MX hosts one after another.

    Quick mode takes only the preferred MX and stops at the first port that
    connects; full mode takes up to ``settings.max_probe_hosts`` hosts and
    every requested port.
    """
    settings = settings or get_settings()
    summary = StarttlsSummary()
    targets = mx_records[:1 if options.quick_test else settings.max_probe_hosts]
    if not targets:
        summary.issues.append(issue("info", "No MX hosts to probe"))
        return summary

    mtasts_ok = bool(mtasts and mtasts.found_policy and mtasts.policy
                     and mtasts.policy.mode and mtasts.policy.mode != "none")
    for mx in targets:
        ip = mx.addresses[0] if mx.addresses else None
        for port in options.ports or [25]:
            probe_options = ProbeOptions(
                compel_tls=options.compel_tls,
                direct_tls=options.direct_tls and port == 465,
                stop_after=StopAfter.EHLO2 if options.quick_test else options.stop_after,
                timeout=settings.smtp_timeout,
                mail_from_grace=settings.mail_from_grace,
                helo_name=settings.probe_hostname,
            )
            probe = SmtpProbe(mx.exchange, port, probe_options, connect_host=ip,
                              transport_factory=transport_factory)
            check = await asyncio.to_thread(probe.run)
            check.ip = ip
            check.mx_pref = mx.priority
            check.answer = f"{ip}:{port}" if ip else None
            check.mtasts_ok = mtasts_ok
            check.dane_ok = "not tested"
            check.score = compute_tls_score(check)
            summary.checks.append(check)
            if options.quick_test and check.connect_ok:
                break
    return summary
