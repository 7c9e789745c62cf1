import inquirer


def prompt_user_choice(
    choices: list[str], prompt_message: str = "Please select an option:"
) -> str | None:
    """
    Prompt user to select from a list of choices using inquirer.

    Args:
        choices: List of strings to choose from
        prompt_message: Message to display to user

    Returns:
        Selected choice string, or None if cancelled
    """
    if not choices:
        return None

    try:
        questions = [
            inquirer.List(
                "choice",
                message=prompt_message,
                choices=choices,
            ),
        ]
        answers = inquirer.prompt(questions)
        return answers["choice"] if answers else None

    except KeyboardInterrupt:
        return None


def select_service(
    service_names: list[str], prompt_message: str = "Select a service:"
) -> str | None:
    """
    Pick a service, prompting only when there is more than one to choose from.

    Returns:
        The selected service name, or None if there is none or the prompt was cancelled
    """
    if len(service_names) == 1:
        return service_names[0]
    return prompt_user_choice(service_names, prompt_message)


def confirm_action(message: str, default: bool = False) -> bool:
    """
    Ask the user to confirm a destructive action.

    Returns:
        True only if the user explicitly confirmed
    """
    try:
        questions = [inquirer.Confirm("confirmed", message=message, default=default)]
        answers = inquirer.prompt(questions)
        return bool(answers and answers["confirmed"])

    except KeyboardInterrupt:
        return False
