"""
Sequence enrollment feature package.

Vertical slice for enrolling job applications into outreach sequences:
domain model and state machine, repositories, collaborator clients,
services (lifecycle, bulk, trigger evaluation, auto-enrollment config,
queries), the stage-change consumer job and the HTTP router.

Layers are imported from their own modules; this package stays empty so
the domain layer can be imported without loading the API.
"""
