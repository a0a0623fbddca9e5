"""Pure domain layer - clock, value objects, posting rules, rates and DTOs."""
