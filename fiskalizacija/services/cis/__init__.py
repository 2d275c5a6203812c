# fiskalizacija/services/cis/__init__.py
"""
Croatian fiscalization (CIS) services:

- certificates: PKCS#12 loading and RSA-SHA1 signing.
- zki: issuer security code (ZKI).
- xml_builder: RacunZahtjev SOAP envelope.
- signer: enveloped XML-DSIG (exclusive c14n, RSA-SHA1).
- client: HTTPS transport with pinned trust for the TEST environment.
- response_parser: RacunOdgovor -> JIR or structured error.
- storno: cancellation of invoices that already have a JIR.
- workflow: FiscalizationService, the pipeline tying everything together.
"""
