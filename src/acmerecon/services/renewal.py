"""Drift and renewal-threshold checks.

Decides whether a :class:`CertificateRequest` needs an issuance run by
comparing it with the certificate currently stored in its target
secret.

Threshold::

    renew_before_days (per request, else global)   if configured and
                                                   shorter than the lifetime
    renew_before_fraction * certificate lifetime   otherwise

Renewal triggers only when the remaining validity is *strictly* below
the threshold: a 90-day certificate with a 30-day threshold is renewed
on day 61, not day 60.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from acmerecon.models.certificate import IssuedCertificate

if TYPE_CHECKING:
    from datetime import datetime

    from acmerecon.config.settings import RenewalSettings
    from acmerecon.models.request import CertificateRequest
    from acmerecon.models.secret import SecretVersion

log = logging.getLogger(__name__)


def renewal_threshold(
    cert: IssuedCertificate,
    settings: RenewalSettings,
    *,
    renew_before_days: float | None = None,
) -> timedelta:
    """Return how much remaining validity triggers a renewal of *cert*.

    A day-based threshold that is not shorter than the certificate's
    lifetime would flag every fresh certificate; the fractional
    threshold is used instead.
    """
    fractional = cert.lifetime * settings.renew_before_fraction
    days = renew_before_days if renew_before_days is not None else settings.renew_before_days
    if days is None:
        return fractional

    threshold = timedelta(days=days)
    if threshold >= cert.lifetime:
        log.warning(
            "Renewal threshold of %gd is not shorter than the %.1fd lifetime of "
            "certificate %s, using %.1fd instead",
            days,
            cert.lifetime.total_seconds() / 86400,
            cert.serial_number,
            fractional.total_seconds() / 86400,
        )
        return fractional
    return threshold


def needs_issuance(
    request: CertificateRequest,
    stored: SecretVersion | None,
    now: datetime,
    settings: RenewalSettings,
) -> str | None:
    """Return why *request* needs a run, or ``None`` if it is up to date."""
    if stored is None:
        return "no certificate stored"

    try:
        cert = IssuedCertificate.from_secret_data(stored.data)
    except (KeyError, ValueError) as exc:
        return f"stored certificate unreadable: {exc}"

    if cert.domains != request.domains:
        added = sorted(request.domains - cert.domains)
        removed = sorted(cert.domains - request.domains)
        return f"domain set changed (added={added}, removed={removed})"

    threshold = renewal_threshold(cert, settings, renew_before_days=request.renew_before_days)
    remaining = cert.remaining(now)
    if remaining < threshold:
        return (
            f"remaining validity {remaining.total_seconds() / 86400:.1f}d "
            f"below renewal threshold {threshold.total_seconds() / 86400:.1f}d"
        )
    return None
