"""Email address -> (full domain, primary domain) parsing.

Pure and total: malformed input yields empty strings instead of raising,
so callers can validate separately.
"""

from pydantic import BaseModel

# Two-label public suffixes under which the registrable domain is three labels.
COMPOUND_TLDS = frozenset(
    {
        "co.in", "net.in", "org.in", "gov.in", "ac.in", "edu.in", "res.in",
        "co.uk", "org.uk", "me.uk", "ltd.uk", "plc.uk", "ac.uk", "gov.uk", "nhs.uk",
        "com.au", "net.au", "org.au", "edu.au", "gov.au", "asn.au", "id.au",
        "co.nz", "org.nz", "net.nz", "govt.nz", "ac.nz",
        "co.za", "org.za", "gov.za", "ac.za",
        "co.jp", "ne.jp", "or.jp", "ac.jp", "go.jp",
        "co.kr", "or.kr", "ac.kr",
        "com.br", "net.br", "org.br", "gov.br",
        "com.mx", "org.mx", "gob.mx",
        "com.sg", "edu.sg", "gov.sg",
        "com.my", "com.ph", "com.pk", "com.bd", "com.np", "com.vn",
        "com.cn", "net.cn", "org.cn", "gov.cn",
        "com.hk", "com.tw", "co.id", "co.th", "ac.th",
        "com.tr", "com.sa", "com.eg", "com.ng", "co.ke",
        "com.ar", "com.co", "com.pe", "co.il", "ac.il",
    }
)


class ParsedDomain(BaseModel):
    full_domain: str
    primary_domain: str
    has_subdomain: bool

    model_config = {"frozen": True}


_EMPTY = ParsedDomain(full_domain="", primary_domain="", has_subdomain=False)


def extract_domain(email: str) -> str:
    """Return the lower-cased domain part of an address, or "" if there is none."""
    if not email or "@" not in email:
        return ""
    return email.rsplit("@", 1)[1].strip().strip(".").lower()


def primary_domain_of(full_domain: str) -> str:
    """Reduce a host name to its registrable domain."""
    labels = [label for label in full_domain.split(".") if label]
    if len(labels) <= 2:
        return ".".join(labels)
    if ".".join(labels[-2:]) in COMPOUND_TLDS:
        return ".".join(labels[-3:])
    return ".".join(labels[-2:])


def parse_email_domain(email: str) -> ParsedDomain:
    """Split an address into its full and primary domain.

    >>> parse_email_domain("noreply@custcomm.icicibank.com")
    ParsedDomain(full_domain='custcomm.icicibank.com', primary_domain='icicibank.com', has_subdomain=True)
    >>> parse_email_domain("alerts@hdfcbank.co.in").has_subdomain
    False
    """
    full_domain = extract_domain(email)
    if not full_domain:
        return _EMPTY
    full_domain = ".".join(label for label in full_domain.split(".") if label)
    primary = primary_domain_of(full_domain)
    return ParsedDomain(
        full_domain=full_domain,
        primary_domain=primary,
        has_subdomain=full_domain != primary,
    )


def is_valid_address(email: str) -> bool:
    """True for something shaped like local@host.tld."""
    if not email or email.count("@") != 1:
        return False
    local, _, domain = email.strip().partition("@")
    return bool(local) and "." in domain.strip(".") and " " not in email.strip()
