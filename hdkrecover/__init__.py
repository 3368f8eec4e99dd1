# hdkrecover — IV & path recovery for PlayStation Home content
# Known-plaintext search for Blowfish-CTR payloads and reverse-hash mapping
# of hash-named archive entries.
#
# Architecture (bottom → top):
#   errors      — ConfigurationError and the disambiguator errors
#   signatures  — Plaintext signature catalog (ordered by priority)
#   config      — IV spaces, segment-count bound, worker settings
#   keystream   — Keystream search engine (recover / auto / CTR helpers)
#   naming      — AFS hash + digest <-> filename codec
#   patterns    — Path templates (fast / full) + content harvesting
#   mapper      — Path hash recovery engine
#   parallel    — Multiprocessing fan-out with ordered reduction
#   manager     — File / folder glue, .time artifact, reports
