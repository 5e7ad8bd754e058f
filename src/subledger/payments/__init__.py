"""Payment transactions and the payment gateway collaborator."""
