"""
Escrow app.

Peer-to-peer escrow between the party who posts a job (seller) and the
party who fulfils it (buyer). The seller's payment for the job price plus
the platform commission is held at publication, released to the buyer once
the seller confirms (or the validation window lapses), and split by tiered
penalties when the seller withdraws after a buyer committed.

Entry points:
    - escrow.services.EscrowService: every escrow transition
    - escrow.workers.AutoValidationReconciler: time-driven releases
    - escrow.tasks.run_auto_validations: Celery task wrapping the reconciler
"""
