"""
SpecVerse — Engineering Datasheet Platform (v1.0.0)

Architecture:
  specverse/
  ├── config/        — Environment, feature flags, roles & permissions matrix
  ├── db/            — JSON / PostgreSQL document store, transactions, file storage
  ├── errors/        — AppError and status helpers
  ├── auth/          — bcrypt passwords, JWT sessions, permission dependencies
  ├── accounts/      — Users, accounts (tenants), memberships
  ├── invites/       — Hashed-token invitations
  ├── audit/         — Audit trail and per-sheet value change log
  ├── notifications/ — In-app notifications
  ├── reference/     — Clients, projects, categories, manufacturers, suppliers, areas, warehouses
  ├── datasheets/    — Shared sheet helpers: header, subsheets, unified view, duplication
  ├── templates/     — Template workflow, clone, revise
  ├── sheets/        — Filled sheets: value validation, workflow, clone, revise
  ├── revisions/     — Snapshots, restore, field diff
  ├── notes/         — Sheet notes
  ├── attachments/   — Sheet attachments
  ├── layouts/       — Print layouts, slot grid builder, rendering
  ├── inventory/     — Items, stock transactions, maintenance
  ├── exports/       — Background CSV export jobs, signed downloads
  ├── reports/       — Dashboard aggregates and inventory forecast
  └── server.py      — FastAPI routing layer

Domain modules never import FastAPI (auth excepted); they raise AppError and the
server renders it.
"""
