"""
Mailbox Filler Engine — resumable, bounded-concurrency send campaign.

Drives a long-running SMTP campaign (new messages, replies, forwards) until a
target mailbox corpus size is reached, persisting its progress after every
batch so a restart resumes where it stopped.

Modules:
    models.py          — Identity, SendRequest, SendOutcome, ThreadRecord
    errors.py          — Campaign exception hierarchy
    identities.py      — Identity feed loader (CSV / JSON, sentinel filtering)
    content_pool.py    — Body snippets + size-tiered attachment references
    thread_graph.py    — Append-only record of sent messages (reply/forward origins)
    size_estimator.py  — Heuristic mailbox-side size of a message
    work_generator.py  — Batches of SendRequests per message kind
    send_worker.py     — MIME construction + one authenticated send (aiosmtplib)
    dispatcher.py      — Fixed-size worker pool over a bounded queue
    state_store.py     — CampaignState + JSON / MongoDB persistence
    controller.py      — Stage state machine (new → reply → forward → overflow → done)
    alerts.py          — Webhook alerting (Slack/Telegram/Discord)
"""
